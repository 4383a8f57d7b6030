"""
FastAPI HTTP API for the worker process.

Control posts StartRun / RunTask / StopRun to /messages. Each turn runs as
a background task so the POST returns immediately (202); turns are
serialised on the single surface by an asyncio.Lock. The result goes back
to control as exactly one HandshakeComplete or TaskCompleted.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Coroutine

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from browser.base import AutomationSurface
from shared.config import ProtocolConfig
from shared.errors import SurfaceUnavailable
from shared.logging import get_logger
from shared.messages import RunTask, StartRun, StopRun, parse_message

from .channel import ControlChannel
from .protocol import InteractionProtocol

log = get_logger("worker", "api")


class WorkerService:
    """One surface, one turn at a time."""

    def __init__(
        self,
        surface: AutomationSurface,
        config: ProtocolConfig,
        channel: ControlChannel,
        protocol: InteractionProtocol = None,
    ):
        self.surface = surface
        self.channel = channel
        self.protocol = protocol or InteractionProtocol(surface, config, notify=channel.log_line)
        self._turn_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self.surface_ready = False
        self.turns_completed = 0

    async def startup(self) -> None:
        log.info("worker.service.lifecycle", action="starting", surface=self.surface.name)
        try:
            await self.surface.connect()
            self.surface_ready = await self.surface.is_ready()
        except SurfaceUnavailable as e:
            log.warning("worker.service.surface_unavailable", error=str(e))
            self.surface_ready = False
        log.info("worker.service.lifecycle", action="started", surface_ready=self.surface_ready)

    async def shutdown(self) -> None:
        log.info("worker.service.lifecycle", action="stopping", pending=len(self._tasks))
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.surface.disconnect()
        await self.channel.close()
        log.info("worker.service.lifecycle", action="stopped")

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    async def health(self) -> dict:
        # Don't touch the page mid-turn; the last answer stands
        if not self.busy:
            try:
                self.surface_ready = await self.surface.is_ready()
            except Exception as e:
                log.warning("worker.service.readiness_check_failed", error=str(e))
                self.surface_ready = False
        return {
            "surface_ready": self.surface_ready,
            "surface_handle": self.surface.handle,
            "busy": self.busy,
        }

    def accept(self, message: BaseModel) -> bool:
        """Queue a message for handling. False if it is not a worker message."""
        if isinstance(message, RunTask):
            self._spawn(self._run_task(message))
        elif isinstance(message, StartRun):
            self._spawn(self._run_handshake(message))
        elif isinstance(message, StopRun):
            log.info("worker.service.stop_requested", busy=self.busy)
        else:
            return False
        return True

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_task(self, message: RunTask) -> None:
        async with self._turn_lock:
            completed = await self.protocol.run_task(message)
            self.turns_completed += 1
        await self.channel.send(completed)

    async def _run_handshake(self, message: StartRun) -> None:
        async with self._turn_lock:
            done = await self.protocol.run_handshake(message)
        await self.channel.send(done)

    async def drain(self) -> None:
        """Wait for every queued turn to finish (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def create_app(service: WorkerService) -> FastAPI:
    """Create the FastAPI application around a WorkerService."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.startup()
        yield
        await service.shutdown()

    app = FastAPI(
        title="Extractor Worker",
        description="Drives the automation surface one turn at a time",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    @app.post("/messages", status_code=202)
    async def messages(body: dict = Body(...)):
        try:
            message = parse_message(body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if not service.accept(message):
            raise HTTPException(status_code=400, detail=f"Unexpected action: {message.action}")
        return {"status": "accepted", "action": message.action}

    @app.get("/health")
    async def health():
        return await service.health()

    return app
