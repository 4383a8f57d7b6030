"""
Control process service.

Ties together the control-side components:
- DurableStore / BatchQueue / PayloadStore / ResultSink: persistence
- DurableTimers: advance-queue and stuck-turn-watchdog alarms
- LockSupervisor: the single-slot lock
- Scheduler: the orchestration state machine
- WorkerChannel: messages to the worker
- OperatorLog / CsvExporter: operator-facing output

and exposes the operator actions the HTTP API and CLI call.
"""

import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel

from shared.config import ControlConfig
from shared.logging import get_logger
from shared.messages import HandshakeComplete, LogLine, TaskCompleted

from .channel import WorkerChannel
from .export import CsvExporter
from .models import Batch, OrchestrationState, new_batch_id
from .oplog import OperatorLog
from .scheduler import ADVANCE, Scheduler
from .store import BatchQueue, DurableStore, PayloadStore, ResultSink
from .supervisor import STATE_KEY, WATCHDOG, LockSupervisor
from .timers import DurableTimers

log = get_logger("orchestrator", "main")


def batch_name_from_filename(filename: str) -> str:
    """Third '-'-separated part of the filename, e.g. jobs-export-acme-1.json -> acme."""
    parts = Path(filename).name.split("-")
    if len(parts) > 2:
        return parts[2]
    return "Unknown"


class ControlService:
    """The control process: durable queue, lock, timers and operator actions."""

    def __init__(
        self,
        config: ControlConfig,
        channel: Optional[WorkerChannel] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        data_dir = Path(config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.store = DurableStore(
            data_dir / "state.json",
            defaults={
                STATE_KEY: OrchestrationState().to_dict(),
                BatchQueue.KEY: [],
                DurableTimers.KEY: {},
            },
        )
        self.queue = BatchQueue(self.store)
        self.payloads = PayloadStore(data_dir / "payloads")
        self.sink = ResultSink(data_dir / "results.jsonl")
        self.timers = DurableTimers(self.store, clock=clock)
        self.supervisor = LockSupervisor(
            self.store, self.timers, config.turn_deadline_seconds, clock=clock
        )
        self.channel = channel or WorkerChannel(config.worker_url, config.request_timeout)
        self.oplog = OperatorLog()
        self.exporter = CsvExporter(config.export_dir)
        self.scheduler = Scheduler(
            store=self.store,
            queue=self.queue,
            payloads=self.payloads,
            sink=self.sink,
            timers=self.timers,
            supervisor=self.supervisor,
            channel=self.channel,
            config=config,
            oplog=self.oplog,
            on_drained=self.on_drained,
        )
        self.last_export: Optional[Path] = None

    # ==================== Lifecycle ====================

    async def startup(self) -> None:
        """Restore persisted timers and reconcile with the durable record."""
        log.info("orchestrator.service.lifecycle", action="starting",
                 data_dir=str(self.config.data_dir))
        self.timers.restore()
        await self.scheduler.recover()
        log.info("orchestrator.service.lifecycle", action="started")

    async def shutdown(self) -> None:
        log.info("orchestrator.service.lifecycle", action="stopping")
        await self.timers.shutdown()
        await self.channel.close()
        log.info("orchestrator.service.lifecycle", action="stopped")

    # ==================== Worker messages ====================

    async def handle_message(self, message: BaseModel) -> bool:
        """Route a message from the worker. Returns False if it was not for us."""
        if isinstance(message, TaskCompleted):
            await self.scheduler.on_task_completed(message)
        elif isinstance(message, HandshakeComplete):
            await self.scheduler.on_handshake_complete(message)
        elif isinstance(message, LogLine):
            self.oplog.write(message.message, source="worker")
        else:
            log.warning("orchestrator.service.unexpected_message",
                        action=getattr(message, "action", None))
            return False
        return True

    # ==================== Operator actions ====================

    def ingest(self, filename: str, payloads: list) -> Batch:
        """Add one batch: payloads to the PayloadStore, metadata to the queue."""
        batch = Batch(
            id=new_batch_id(),
            name=batch_name_from_filename(filename),
            filename=filename,
            total_count=len(payloads),
        )
        self.payloads.save(batch.id, payloads)
        self.queue.add(batch)
        self.oplog.write(f"Added '{filename}' ({batch.total_count} tasks)")
        return batch

    async def start(self) -> str:
        return await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    def _release_if_locked_on(self, batch_id: Optional[str] = None) -> None:
        """Force-clear the lock if it is held for batch_id (or any batch if None)."""
        state = self.scheduler.state()
        if not state.is_typing or state.current_batch_id is None:
            return
        if batch_id is None or state.current_batch_id == batch_id:
            self.supervisor.release()
            self.supervisor.reset_retries()
            log.info("orchestrator.service.lock_cleared_for_operator",
                     batch_id=state.current_batch_id)

    def _resume(self) -> None:
        if self.scheduler.state().is_processing and not self.supervisor.is_locked():
            self.timers.arm(ADVANCE, self.config.delay("on_resume"))

    def reset_batch(self, batch_id: str) -> Optional[Batch]:
        if self.queue.get(batch_id) is None:
            return None
        self._release_if_locked_on(batch_id)
        batch = self.queue.reset(batch_id)
        self.oplog.write(f"Batch '{batch.name}' reset")
        self._resume()
        return batch

    def reset_all(self) -> int:
        self._release_if_locked_on()
        count = self.queue.reset_all()
        self.oplog.write(f"Reset {count} batches")
        self._resume()
        return count

    def delete_batch(self, batch_id: str) -> bool:
        batch = self.queue.get(batch_id)
        if batch is None:
            return False
        self._release_if_locked_on(batch_id)
        self.queue.delete(batch_id)
        self.payloads.delete(batch_id)
        self.oplog.write(f"Deleted batch '{batch.name}'")
        self._resume()
        return True

    def clear_completed(self) -> list[str]:
        removed = self.queue.clear_completed()
        for batch_id in removed:
            self.payloads.delete(batch_id)
        self.oplog.write(f"Cleared {len(removed)} completed batches")
        return removed

    def export(self) -> Optional[Path]:
        path = self.exporter.export(self.sink.all())
        if path is None:
            self.oplog.write("No results to export", level="WARNING")
        else:
            self.last_export = path
            self.oplog.write(f"Exported results to {path}")
        return path

    def clear_results(self) -> None:
        self.sink.clear()
        self.oplog.write("Results cleared")

    async def on_drained(self) -> None:
        """Auto-export on drain, then optionally wipe results, payloads and queue."""
        if not self.config.export_on_drain:
            return
        path = self.export()
        if path is None or not self.config.cleanup_after_drain:
            return
        self.sink.clear()
        self.payloads.clear()
        self.queue.clear()
        log.info("orchestrator.service.cleaned_after_drain", export=str(path))
        self.oplog.write("Storage cleaned; ready for new files")

    def status(self) -> dict:
        state = self.scheduler.state()
        batches = self.queue.batches()
        return {
            "phase": state.phase.value,
            "state": state.to_dict(),
            "lock_age": state.lock_age(self.supervisor.clock()),
            "timers": {
                name: self.timers.fire_at(name)
                for name in (ADVANCE, WATCHDOG)
            },
            "batches": [
                {**b.to_dict(), "processed_count": b.processed_count}
                for b in batches
            ],
            "results_count": self.sink.count(),
            "last_export": str(self.last_export) if self.last_export else None,
        }
