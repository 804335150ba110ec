from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal


ONLINE = "online"
OFFLINE = "offline"

Status = Literal["online", "offline"]

DEFAULT_CHECK_INTERVAL_MS = 3000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Service:
    """Working copy of a persisted service. Re-read from storage every cycle."""

    id: str
    name: str
    url: str
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    status: Status = ONLINE
    is_deploying: bool = False
    last_fail_at: datetime | None = None
    discord_webhook: str = ""
    coolify_webhook: str = ""
    coolify_token: str = ""
    user_id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def interval_seconds(self, default_ms: int = DEFAULT_CHECK_INTERVAL_MS) -> float:
        ms = self.check_interval_ms if self.check_interval_ms and self.check_interval_ms > 0 else default_ms
        return ms / 1000.0


@dataclass(frozen=True)
class StatusLogEntry:
    service_id: str
    status: Status
    checked_at: datetime


@dataclass(frozen=True)
class DaySummary:
    date: str  # YYYY-MM-DD (UTC)
    online: int = 0
    offline: int = 0
    dominant: Status | None = field(default=None)

    def as_dict(self) -> dict:
        return {"date": self.date, "online": self.online, "offline": self.offline, "dominant": self.dominant}
