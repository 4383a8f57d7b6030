"""
FastAPI HTTP API for the control process.

Two audiences share this app:
- the worker, which posts TaskCompleted / HandshakeComplete / LogLine
  messages to /messages
- the operator (extractor.py), which drives the queue
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from shared.errors import StoreIOError, SurfaceUnavailable
from shared.logging import get_logger
from shared.messages import parse_message

from .main import ControlService

log = get_logger("orchestrator", "api")


class IngestRequest(BaseModel):
    """One batch file: its name and its parsed task list."""
    filename: str
    tasks: list[Any]


class IngestResponse(BaseModel):
    batch_ids: list[str]


def create_app(service: ControlService) -> FastAPI:
    """Create the FastAPI application around a ControlService."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.startup()
        yield
        await service.shutdown()

    app = FastAPI(
        title="Extractor Control",
        description="Durable queue, lock and timers for the extraction relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    # ==================== WORKER MESSAGES ====================

    @app.post("/messages")
    async def messages(body: dict = Body(...)):
        """Receive one message from the worker."""
        try:
            message = parse_message(body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        try:
            handled = await service.handle_message(message)
        except StoreIOError as e:
            log.exception(e, "orchestrator.api.message_failed", {"action": message.action})
            raise HTTPException(status_code=500, detail=str(e))
        if not handled:
            raise HTTPException(status_code=400, detail=f"Unexpected action: {message.action}")
        return {"status": "ok"}

    # ==================== RUN CONTROL ====================

    @app.post("/start")
    async def start():
        try:
            result = await service.start()
        except SurfaceUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"status": result}

    @app.post("/stop")
    async def stop():
        await service.stop()
        return {"status": "stopped"}

    @app.get("/status")
    async def status():
        return service.status()

    @app.get("/log")
    async def oplog(limit: Optional[int] = 50):
        return {"lines": service.oplog.tail(limit)}

    # ==================== QUEUE ====================

    @app.get("/batches")
    async def list_batches():
        return {"batches": [b.to_dict() for b in service.queue.batches()]}

    @app.post("/batches", response_model=IngestResponse)
    async def ingest(requests: list[IngestRequest]):
        """Add one batch per file."""
        batch_ids = [service.ingest(r.filename, r.tasks).id for r in requests]
        return IngestResponse(batch_ids=batch_ids)

    @app.post("/batches/clear-completed")
    async def clear_completed():
        return {"removed": service.clear_completed()}

    @app.post("/batches/{batch_id}/reset")
    async def reset_batch(batch_id: str):
        batch = service.reset_batch(batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail=f"Batch not found: {batch_id}")
        return batch.to_dict()

    @app.delete("/batches/{batch_id}")
    async def delete_batch(batch_id: str):
        if not service.delete_batch(batch_id):
            raise HTTPException(status_code=404, detail=f"Batch not found: {batch_id}")
        return {"deleted": batch_id}

    @app.post("/reset")
    async def reset_all():
        return {"reset": service.reset_all()}

    # ==================== RESULTS ====================

    @app.post("/export")
    async def export():
        path = service.export()
        return {"path": str(path) if path else None, "rows": service.sink.count()}

    @app.delete("/results")
    async def clear_results():
        service.clear_results()
        return {"status": "cleared"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "phase": service.scheduler.phase().value}

    return app
