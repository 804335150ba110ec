from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import httpx
import structlog

from .errors import ConfigurationGap, NotificationFailure
from .models import Service, utcnow


logger = structlog.get_logger(__name__)

DEFAULT_NOTIFY_TIMEOUT_SECONDS = 15.0

COLOR_FAILURE = 0xFF0000
COLOR_RECOVERY = 0x00FF00


def build_failure_embed(service: Service, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "title": "🚨 Service Offline",
        "description": f"**{service.name}** is down!",
        "color": COLOR_FAILURE,
        "fields": [
            {"name": "URL", "value": service.url, "inline": True},
            {"name": "Status", "value": "Offline", "inline": True},
            {"name": "Action", "value": "Automatic redeploy initiated", "inline": False},
        ],
        "timestamp": (now or utcnow()).isoformat(),
    }


def build_recovery_embed(service: Service, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "title": "✅ Service Recovered",
        "description": f"**{service.name}** is back online!",
        "color": COLOR_RECOVERY,
        "fields": [
            {"name": "URL", "value": service.url, "inline": True},
            {"name": "Status", "value": "Online", "inline": True},
        ],
        "timestamp": (now or utcnow()).isoformat(),
    }


def _redact(text: str, *secrets: str) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<redacted>")
    return text


class Notifier:
    """Best-effort chat alerts and redeploy triggers.

    Every public call returns ``(ok, detail)`` and never raises, so a broken
    webhook cannot abort a state transition or the watchdog loop.
    """

    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = DEFAULT_NOTIFY_TIMEOUT_SECONDS):
        self.client = client
        self.timeout_seconds = float(timeout_seconds)

    async def _post(self, url: str, *, json: dict[str, Any], headers: dict[str, str] | None = None) -> httpx.Response:
        try:
            resp = await self.client.post(url, json=json, headers=headers, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            raise NotificationFailure(f"{type(e).__name__}: {e}") from e
        if not resp.is_success:
            raise NotificationFailure(f"HTTP {resp.status_code}")
        return resp

    async def _guarded(self, channel: str, service: Service, coro_fn, *secrets: str) -> tuple[bool, dict]:
        try:
            resp = await coro_fn()
        except ConfigurationGap as e:
            logger.info("Outbound call skipped", channel=channel, service=service.name, reason=str(e))
            return False, {"ok": False, "skipped": True, "reason": str(e)}
        except NotificationFailure as e:
            err = _redact(str(e), *secrets)
            logger.error("Outbound call failed", channel=channel, service=service.name, error=err)
            return False, {"ok": False, "error": err}
        except Exception as e:
            # Anything else from the transport layer is still a notification failure.
            err = _redact(f"{type(e).__name__}: {e}", *secrets)
            logger.error("Outbound call crashed", channel=channel, service=service.name, error=err)
            return False, {"ok": False, "error": err}
        logger.info("Outbound call sent", channel=channel, service=service.name, status_code=resp.status_code)
        return True, {"ok": True, "status_code": resp.status_code}

    async def send_chat_alert(self, service: Service, *, recovered: bool) -> tuple[bool, dict]:
        async def _send() -> httpx.Response:
            if not service.discord_webhook:
                raise ConfigurationGap("discord webhook not configured")
            embed = build_recovery_embed(service) if recovered else build_failure_embed(service)
            return await self._post(service.discord_webhook, json={"embeds": [embed]})

        return await self._guarded("chat", service, _send, service.discord_webhook)

    async def trigger_redeploy(self, service: Service) -> tuple[bool, dict]:
        async def _send() -> httpx.Response:
            if not service.coolify_webhook:
                raise ConfigurationGap("redeploy webhook not configured")
            headers = {
                "Authorization": f"Bearer {service.coolify_token}",
                "Content-Type": "application/json",
            }
            return await self._post(service.coolify_webhook, json={}, headers=headers)

        return await self._guarded("redeploy", service, _send, service.coolify_token)

    async def notify_failure(self, service: Service) -> tuple[tuple[bool, dict], tuple[bool, dict]]:
        """Chat alert and redeploy trigger, fired independently of each other."""
        chat, redeploy = await asyncio.gather(
            self.send_chat_alert(service, recovered=False),
            self.trigger_redeploy(service),
        )
        return chat, redeploy

    async def notify_recovery(self, service: Service) -> tuple[bool, dict]:
        return await self.send_chat_alert(service, recovered=True)
