"""Turns single probe results into a confirmed up/down determination."""

from __future__ import annotations

import asyncio
import enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import structlog

from .models import Service


logger = structlog.get_logger(__name__)

DEFAULT_RETRY_DELAYS_SECONDS = (30.0, 30.0)

Sleep = Callable[[float], Awaitable[None]]


class Prober(Protocol):
    async def probe(self, url: str) -> bool: ...


class Outcome(enum.Enum):
    UP = "up"
    DOWN = "down"
    # Probe failed while a recovery is already in flight; nothing to do this cycle.
    DEPLOYING = "deploying"


class RetryPolicy:
    """Probe up to ``1 + len(retry_delays)`` times before confirming a failure.

    While a service is deploying only a single probe is made: success reports
    UP so the grace period can end early, failure reports DEPLOYING and never
    starts another retry cascade.
    """

    def __init__(
        self,
        prober: Prober,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        self.prober = prober
        self.retry_delays = tuple(float(d) for d in retry_delays)
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return 1 + len(self.retry_delays)

    async def evaluate(self, service: Service, *, sleep: Optional[Sleep] = None) -> Outcome:
        wait = sleep or self._sleep

        if service.is_deploying:
            if await self.prober.probe(service.url):
                return Outcome.UP
            logger.info("Still deploying, waiting for grace period", service=service.name, service_id=service.id)
            return Outcome.DEPLOYING

        if await self.prober.probe(service.url):
            return Outcome.UP

        for attempt, delay in enumerate(self.retry_delays, start=2):
            logger.warning(
                "Probe failed, retrying",
                service=service.name,
                service_id=service.id,
                next_attempt=attempt,
                max_attempts=self.max_attempts,
                delay_seconds=delay,
            )
            await wait(delay)
            if await self.prober.probe(service.url):
                return Outcome.UP

        return Outcome.DOWN
