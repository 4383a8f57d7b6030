"""HTTP channel from the worker back to the control process."""

import asyncio
from typing import Optional

import httpx
from pydantic import BaseModel

from shared.logging import get_logger
from shared.messages import LogLine

log = get_logger("worker", "channel")


class ControlChannel:
    """
    Posts messages to the control process's /messages endpoint.

    Transport failures (control process restarting) are retried a few
    times; an HTTP error response is not.
    """

    def __init__(
        self,
        base_url: str,
        attempts: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def send(self, message: BaseModel, attempts: Optional[int] = None) -> bool:
        action = getattr(message, "action", "?")
        attempts = attempts or self.attempts

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.post("/messages", json=message.model_dump())
            except httpx.TransportError as e:
                log.warning("worker.channel.send_failed",
                            action=action, attempt=attempt, error=str(e))
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay)
                continue

            if response.status_code >= 300:
                log.warning("worker.channel.send_rejected",
                            action=action, status=response.status_code)
                return False
            log.debug("worker.channel.sent", action=action)
            return True

        log.error("worker.channel.undeliverable", action=action, attempts=attempts)
        return False

    async def log_line(self, text: str) -> None:
        """Operator-facing line; one attempt, failures only logged."""
        await self.send(LogLine(message=text), attempts=1)

    async def close(self) -> None:
        await self._client.aclose()
