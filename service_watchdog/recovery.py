"""Online/offline/deploying transitions for one service.

States:
  online                 status=online
  offline, stable        status=offline, is_deploying=False
  offline, recovering    status=offline, is_deploying=True (grace timer pending)

A confirmed failure locks the service (``is_deploying``), fires the chat alert
and the redeploy trigger once, and arms a grace timer that releases the lock.
While locked, failed probes never re-notify or re-deploy; a successful probe
releases the lock immediately.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Protocol

import structlog

from .errors import PersistenceFailure
from .models import OFFLINE, ONLINE, Service, StatusLogEntry, utcnow
from .retry import Outcome
from .store import ServiceStore


logger = structlog.get_logger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 6 * 60.0


class RecoveryNotifier(Protocol):
    async def notify_failure(self, service: Service) -> object: ...

    async def notify_recovery(self, service: Service) -> object: ...


class RecoveryStateMachine:
    def __init__(
        self,
        store: ServiceStore,
        notifier: RecoveryNotifier,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.grace_period_seconds = float(grace_period_seconds)
        self.clock = clock
        # service id -> the one grace timer that may release that service's lock
        self._grace_timers: dict[str, asyncio.Task] = {}

    @property
    def pending_grace_timers(self) -> int:
        return sum(1 for t in self._grace_timers.values() if not t.done())

    async def apply(self, service: Service, outcome: Outcome) -> None:
        if outcome is Outcome.UP:
            await self._handle_up(service)
        elif outcome is Outcome.DOWN:
            await self._handle_down(service)
        # Outcome.DEPLOYING: recovery already in flight, nothing changes.

    async def _log_transition(self, service: Service, status: str) -> None:
        await self.store.create(StatusLogEntry(service_id=service.id, status=status, checked_at=self.clock()))  # type: ignore[arg-type]

    async def _handle_up(self, service: Service) -> None:
        recovered = service.status == OFFLINE
        changed = recovered

        if recovered:
            logger.info("Service is back online", service=service.name, service_id=service.id)
            service.status = ONLINE
            await self._log_transition(service, ONLINE)

        # Success short-circuits the grace period.
        self._cancel_grace_timer(service.id)
        if service.is_deploying:
            service.is_deploying = False
            changed = True

        if changed:
            await self.store.update_state(service)

        if recovered:
            await self.notifier.notify_recovery(service)

    async def _handle_down(self, service: Service) -> None:
        was_online = service.status == ONLINE

        if service.is_deploying:
            # Locked: persist the offline status only. No alert, no redeploy.
            service.status = OFFLINE
            await self.store.update_state(service)
            logger.info("Service still down during grace period", service=service.name, service_id=service.id)
            return

        logger.error("Service confirmed offline", service=service.name, service_id=service.id, url=service.url)
        service.status = OFFLINE
        service.last_fail_at = self.clock()
        if was_online:
            await self._log_transition(service, OFFLINE)

        service.is_deploying = True
        await self.store.update_state(service)

        logger.info("Starting recovery", service=service.name, service_id=service.id)
        await self.notifier.notify_failure(service)

        self._arm_grace_timer(service.id)

    def _arm_grace_timer(self, service_id: str) -> asyncio.Task:
        # A timer left over from an earlier outage must not cut this lock short.
        self._cancel_grace_timer(service_id)
        logger.info("Grace period armed", service_id=service_id, grace_seconds=self.grace_period_seconds)
        task = asyncio.create_task(self._grace_timer(service_id), name=f"grace:{service_id}")
        self._grace_timers[service_id] = task
        task.add_done_callback(lambda t: self._forget_grace_timer(service_id, t))
        return task

    def _forget_grace_timer(self, service_id: str, task: asyncio.Task) -> None:
        if self._grace_timers.get(service_id) is task:
            del self._grace_timers[service_id]

    def _cancel_grace_timer(self, service_id: str) -> None:
        task = self._grace_timers.pop(service_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Grace timer cancelled", service_id=service_id)

    async def _grace_timer(self, service_id: str) -> None:
        await asyncio.sleep(self.grace_period_seconds)
        try:
            await self.expire_grace(service_id)
        except Exception:
            logger.exception("Grace timer crashed", service_id=service_id)

    async def expire_grace(self, service_id: str) -> bool:
        """Release the recovery lock if it is still held. Status is left as is."""
        try:
            fresh = await self.store.find_by_id(service_id)
            if fresh is None or not fresh.is_deploying:
                return False
            fresh.is_deploying = False
            await self.store.update_state(fresh)
        except PersistenceFailure as e:
            logger.error("Failed to end grace period", service_id=service_id, error=str(e))
            return False
        logger.info("Grace period ended", service=fresh.name, service_id=service_id)
        return True

    async def cancel_pending(self) -> None:
        tasks = [t for t in self._grace_timers.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._grace_timers.clear()
