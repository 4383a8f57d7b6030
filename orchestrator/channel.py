"""
HTTP channel from the control process to the worker.

Sends are at-most-once: a failed POST is reported as False and never
retried here; the scheduler decides what to do about it.
"""

from typing import Optional

import httpx
from pydantic import BaseModel

from shared.errors import SurfaceUnavailable
from shared.logging import get_logger

log = get_logger("orchestrator", "channel")


class WorkerChannel:
    """Talks to the worker's /health and /messages endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def probe(self) -> dict:
        """
        Ask the worker whether its surface is ready.

        Returns the health dict: {surface_ready, surface_handle, busy}.
        Raises SurfaceUnavailable if the worker cannot be reached.
        """
        try:
            response = await self._client.get("/health")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            log.warning("orchestrator.channel.probe_failed", error=str(e))
            raise SurfaceUnavailable(f"Worker not reachable at {self.base_url}: {e}") from e

    async def send(self, message: BaseModel) -> bool:
        """POST one message. Returns True if the worker accepted it."""
        action = getattr(message, "action", "?")
        try:
            response = await self._client.post("/messages", json=message.model_dump())
        except httpx.HTTPError as e:
            log.warning("orchestrator.channel.send_failed", action=action, error=str(e))
            return False

        if response.status_code >= 300:
            log.warning("orchestrator.channel.send_rejected",
                        action=action, status=response.status_code)
            return False

        log.debug("orchestrator.channel.sent", action=action)
        return True

    async def close(self) -> None:
        await self._client.aclose()
