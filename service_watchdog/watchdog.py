"""Per-service watchdog loops.

Every watched service gets its own asyncio task that waits the service's
check interval, runs one check cycle (retry policy, then recovery state
machine) and re-reads the interval before waiting again. Cycles of one
service never overlap; cycles of different services run independently.

The CRUD layer calls ``on_service_created`` / ``on_service_updated`` /
``on_service_deleted``. Those may come from another thread; every mutation of
the watch registry is marshalled onto the event loop that owns the tasks.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Optional

import structlog

from .errors import PersistenceFailure
from .jobs import JobScheduler
from .models import DEFAULT_CHECK_INTERVAL_MS, Service
from .recovery import RecoveryStateMachine
from .retry import Outcome, RetryPolicy, Sleep
from .snapshots import DEFAULT_SNAPSHOT_INTERVAL_SECONDS, SNAPSHOT_JOB_ID, HistorySnapshotter
from .store import ServiceStore


logger = structlog.get_logger(__name__)


class WatchHandle:
    """Cancellable handle for one service's loop.

    Stopping interrupts the loop only while it waits (between cycles or
    between retries). A probe or state write in flight completes first.
    """

    def __init__(self, service_id: str):
        self.service_id = service_id
        self.task: Optional[asyncio.Task] = None
        self.stopping = False
        self.waiting = False

    async def sleep(self, seconds: float) -> None:
        if self.stopping:
            raise asyncio.CancelledError()
        self.waiting = True
        try:
            await asyncio.sleep(seconds)
        finally:
            self.waiting = False

    def stop(self, *, force: bool = False) -> None:
        self.stopping = True
        if self.task is None or self.task.done():
            return
        if force or self.waiting:
            self.task.cancel()


class WatchRegistry:
    """service id -> live WatchHandle. Holds timer handles only, never service state."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: dict[str, WatchHandle] = {}

    def put(self, service_id: str, handle: WatchHandle) -> Optional[WatchHandle]:
        """Register ``handle`` and return the one it displaced, if any."""
        with self._lock:
            previous = self._handles.get(service_id)
            self._handles[service_id] = handle
            return previous

    def pop(self, service_id: str, expected: Optional[WatchHandle] = None) -> Optional[WatchHandle]:
        """Remove the handle for ``service_id``; with ``expected``, only if it is still that handle."""
        with self._lock:
            current = self._handles.get(service_id)
            if current is None or (expected is not None and current is not expected):
                return None
            return self._handles.pop(service_id)

    def get(self, service_id: str) -> Optional[WatchHandle]:
        with self._lock:
            return self._handles.get(service_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, service_id: object) -> bool:
        with self._lock:
            return service_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class Watchdog:
    def __init__(
        self,
        store: ServiceStore,
        policy: RetryPolicy,
        machine: RecoveryStateMachine,
        snapshotter: Optional[HistorySnapshotter] = None,
        jobs: Optional[JobScheduler] = None,
        *,
        default_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        snapshot_interval_seconds: int = DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
    ):
        self.store = store
        self.policy = policy
        self.machine = machine
        self.snapshotter = snapshotter
        self.jobs = jobs
        self.default_interval_ms = int(default_interval_ms)
        self.snapshot_interval_seconds = int(snapshot_interval_seconds)
        self.registry = WatchRegistry()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- lifecycle ---

    async def start_all(self) -> int:
        """Reset recovery locks, watch every stored service, then arm the snapshot job."""
        self._loop = asyncio.get_running_loop()

        # Grace timers do not survive a restart; a stale lock would block remediation forever.
        try:
            reset = await self.store.update_many({"is_deploying": False})
            logger.info("Deploy flags reset", services=reset)
        except PersistenceFailure as e:
            logger.error("Failed to reset deploy flags", error=str(e))

        services: list[Service] = []
        try:
            services = await self.store.find()
        except PersistenceFailure as e:
            logger.error("Failed to load services", error=str(e))

        logger.info("Starting watchdogs", services=len(services))
        for service in services:
            self._start(service)

        if self.snapshotter is not None and self.jobs is not None:
            self.jobs.add_interval_job(
                SNAPSHOT_JOB_ID,
                self.snapshotter.take_snapshot,
                seconds=self.snapshot_interval_seconds,
                description="Hourly status snapshot",
            )
            await self.jobs.start()
            logger.info("Snapshot job armed", **(self.jobs.get_job_status(SNAPSHOT_JOB_ID) or {}))

        return len(services)

    async def shutdown(self) -> None:
        tasks = []
        for service_id in self.registry.ids():
            handle = self.registry.pop(service_id)
            if handle is None:
                continue
            handle.stop(force=True)
            if handle.task is not None:
                tasks.append(handle.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        pending = self.machine.pending_grace_timers
        if pending:
            logger.info("Dropping pending grace timers", pending=pending)
        await self.machine.cancel_pending()
        if self.jobs is not None:
            await self.jobs.stop()
        logger.info("Watchdog stopped", stopped=len(tasks))

    # --- per-service control ---

    def start_watching(self, service: Service) -> None:
        """Arm (or re-arm) the watchdog for ``service``. Any existing one is cancelled first."""
        self._dispatch(self._start, service)

    def stop_watching(self, service_id: str) -> None:
        """Cancel and discard the watchdog for ``service_id``. No-op if absent."""
        self._dispatch(self._stop, service_id)

    def restart_watching(self, service: Service) -> None:
        self.stop_watching(service.id)
        self.start_watching(service)

    on_service_created = start_watching
    on_service_updated = restart_watching

    def on_service_deleted(self, service_id: str) -> None:
        self.stop_watching(service_id)

    def watched_ids(self) -> list[str]:
        return self.registry.ids()

    def is_watching(self, service_id: str) -> bool:
        return service_id in self.registry

    def _dispatch(self, fn, arg) -> None:
        loop = self._loop
        if loop is None:
            try:
                loop = self._loop = asyncio.get_running_loop()
            except RuntimeError:
                raise RuntimeError("Watchdog has no event loop; call start_all() first") from None

        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False

        if on_loop:
            fn(arg)
        else:
            loop.call_soon_threadsafe(fn, arg)

    def _start(self, service: Service) -> None:
        handle = WatchHandle(service.id)
        previous = self.registry.put(service.id, handle)
        if previous is not None:
            previous.stop()

        delay = service.interval_seconds(self.default_interval_ms)
        handle.task = asyncio.get_running_loop().create_task(
            self._watch(handle, delay), name=f"watchdog:{service.id}"
        )
        logger.info("Watchdog active", service=service.name, service_id=service.id, interval_seconds=delay)

    def _stop(self, service_id: str, expected: Optional[WatchHandle] = None) -> bool:
        handle = self.registry.pop(service_id, expected)
        if handle is None:
            return False
        handle.stop()
        logger.info("Watchdog stopped", service_id=service_id)
        return True

    # --- loop ---

    async def _watch(self, handle: WatchHandle, delay: float) -> None:
        try:
            while not handle.stopping:
                await handle.sleep(delay)
                next_delay = await self._tick(handle, delay)
                if next_delay is None:
                    return
                delay = next_delay
        except asyncio.CancelledError:
            logger.debug("Watchdog loop cancelled", service_id=handle.service_id)
            raise

    async def _tick(self, handle: WatchHandle, delay: float) -> Optional[float]:
        """Run one cycle and return the wait before the next one, or None to end the loop."""
        service_id = handle.service_id
        try:
            outcome = await self.run_cycle(service_id, sleep=handle.sleep)
        except PersistenceFailure as e:
            logger.error("Check cycle aborted", service_id=service_id, error=str(e))
            return delay
        except Exception:
            logger.exception("Check cycle crashed", service_id=service_id)
            return delay

        if outcome is None:
            # Deleted between schedule and tick.
            logger.info("Service no longer exists", service_id=service_id)
            self._stop(service_id, handle)
            return None

        # The interval may have been edited during the cycle.
        try:
            fresh = await self.store.find_by_id(service_id)
        except PersistenceFailure as e:
            logger.error("Failed to re-read interval", service_id=service_id, error=str(e))
            return delay
        if fresh is None:
            self._stop(service_id, handle)
            return None
        return fresh.interval_seconds(self.default_interval_ms)

    async def run_cycle(self, service_id: str, *, sleep: Optional[Sleep] = None) -> Optional[Outcome]:
        """One full check of ``service_id``. Returns None if the service does not exist."""
        service = await self.store.find_by_id(service_id)
        if service is None:
            return None
        outcome = await self.policy.evaluate(service, sleep=sleep)
        logger.debug("Check cycle finished", service=service.name, service_id=service_id, outcome=outcome.value)
        await self.machine.apply(service, outcome)
        return outcome
