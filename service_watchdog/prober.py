from __future__ import annotations

import httpx
import structlog


logger = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0


class HealthProber:
    """One bounded GET against a URL. Up means the final status is exactly 200."""

    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS):
        self.client = client
        self.timeout_seconds = float(timeout_seconds)

    async def probe(self, url: str) -> bool:
        try:
            resp = await self.client.get(url, timeout=self.timeout_seconds, follow_redirects=True)
        except Exception as e:
            # Timeouts, refused connections, invalid URLs and protocol errors all count as down.
            logger.debug("Probe failed", url=url, error=f"{type(e).__name__}: {e}")
            return False
        return resp.status_code == 200
