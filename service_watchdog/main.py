from __future__ import annotations

import argparse
import asyncio
import json

import httpx
import structlog

from .config import WatchdogConfig, load_config
from .history import summary_as_dicts, uptime_summary
from .jobs import JobScheduler
from .logging_setup import configure_logging
from .notifications import Notifier
from .prober import HealthProber
from .recovery import RecoveryStateMachine
from .retry import RetryPolicy
from .snapshots import HistorySnapshotter
from .store import SqliteStore
from .watchdog import Watchdog


logger = structlog.get_logger(__name__)


def build_watchdog(cfg: WatchdogConfig, client: httpx.AsyncClient, store: SqliteStore) -> Watchdog:
    policy = RetryPolicy(
        HealthProber(client, timeout_seconds=cfg.probe_timeout_seconds),
        retry_delays=cfg.retry_delays_seconds,
    )
    machine = RecoveryStateMachine(
        store,
        Notifier(client, timeout_seconds=cfg.notify_timeout_seconds),
        grace_period_seconds=cfg.grace_period_seconds,
    )
    return Watchdog(
        store,
        policy,
        machine,
        HistorySnapshotter(store),
        JobScheduler(),
        default_interval_ms=cfg.default_check_interval_ms,
        snapshot_interval_seconds=cfg.snapshot_interval_seconds,
    )


async def run_forever(cfg: WatchdogConfig) -> None:
    store = SqliteStore(cfg.db_path)
    store.ensure_schema()

    logger.info(
        "Starting service watchdog",
        db_path=cfg.db_path,
        grace_period_seconds=cfg.grace_period_seconds,
        retry_delays_seconds=cfg.retry_delays_seconds,
        snapshot_interval_seconds=cfg.snapshot_interval_seconds,
    )

    async with httpx.AsyncClient(headers={"User-Agent": cfg.user_agent}) as client:
        watchdog = build_watchdog(cfg, client, store)
        try:
            await watchdog.start_all()
            await asyncio.Event().wait()
        finally:
            await watchdog.shutdown()


async def run_once(cfg: WatchdogConfig) -> dict[str, str]:
    """One check cycle per service, sequentially, then exit."""
    store = SqliteStore(cfg.db_path)
    store.ensure_schema()

    results: dict[str, str] = {}
    async with httpx.AsyncClient(headers={"User-Agent": cfg.user_agent}) as client:
        watchdog = build_watchdog(cfg, client, store)
        try:
            for service in await store.find():
                try:
                    outcome = await watchdog.run_cycle(service.id)
                except Exception:
                    logger.exception("Check cycle crashed", service_id=service.id)
                    results[service.id] = "error"
                    continue
                results[service.id] = outcome.value if outcome else "missing"
        finally:
            # --once does not wait out grace periods; the next start resets the locks.
            await watchdog.machine.cancel_pending()
    return results


async def print_summary(cfg: WatchdogConfig, service_id: str) -> None:
    store = SqliteStore(cfg.db_path)
    summary = await uptime_summary(store, service_id)
    print(json.dumps(summary_as_dicts(summary), indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Watch services, redeploy on confirmed failure")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $WATCHDOG_CONFIG)")
    parser.add_argument("--once", action="store_true", help="Run one check cycle per service then exit")
    parser.add_argument("--summary", metavar="SERVICE_ID", help="Print the 7-day uptime summary as JSON")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(cfg.log_level, cfg.log_format)

    if args.summary:
        asyncio.run(print_summary(cfg, args.summary))
        return

    if args.once:
        results = asyncio.run(run_once(cfg))
        print(json.dumps(results, indent=2, sort_keys=True))
        return

    try:
        asyncio.run(run_forever(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
