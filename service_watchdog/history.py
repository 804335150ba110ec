from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from .models import OFFLINE, ONLINE, DaySummary, StatusLogEntry, as_utc, utcnow
from .store import ServiceStore


DEFAULT_WINDOW_DAYS = 7


def _day_key(ts: datetime) -> str:
    return as_utc(ts).date().isoformat()


def day_keys(now: datetime, *, days: int = DEFAULT_WINDOW_DAYS) -> list[str]:
    """UTC dates of the trailing window, oldest first, ending with today."""
    today = as_utc(now).date()
    return [(today - timedelta(days=i)).isoformat() for i in range(days - 1, -1, -1)]


def window_start(now: datetime, *, days: int = DEFAULT_WINDOW_DAYS) -> datetime:
    """UTC midnight ``days`` days ago: the lower bound used when querying logs."""
    midnight = as_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=days)


def dominant_status(online: int, offline: int) -> str | None:
    if online + offline <= 0:
        return None
    # Ties resolve to online.
    return ONLINE if online >= offline else OFFLINE


def summarize_days(
    entries: Iterable[StatusLogEntry], *, now: datetime, days: int = DEFAULT_WINDOW_DAYS
) -> list[DaySummary]:
    """
    Bucket entries by UTC calendar day over the trailing window.
    Transition entries and hourly snapshots are counted the same way; entries
    outside the window are ignored.
    """
    counts: dict[str, dict[str, int]] = {key: {ONLINE: 0, OFFLINE: 0} for key in day_keys(now, days=days)}

    for entry in entries:
        bucket = counts.get(_day_key(entry.checked_at))
        if bucket is None or entry.status not in bucket:
            continue
        bucket[entry.status] += 1

    return [
        DaySummary(
            date=key,
            online=c[ONLINE],
            offline=c[OFFLINE],
            dominant=dominant_status(c[ONLINE], c[OFFLINE]),  # type: ignore[arg-type]
        )
        for key, c in counts.items()
    ]


async def uptime_summary(
    store: ServiceStore, service_id: str, *, now: datetime | None = None, days: int = DEFAULT_WINDOW_DAYS
) -> list[DaySummary]:
    now = now or utcnow()
    entries = await store.logs_between(service_id, window_start(now, days=days))
    return summarize_days(entries, now=now, days=days)


def summary_as_dicts(summary: Iterable[DaySummary]) -> list[dict]:
    return [day.as_dict() for day in summary]
