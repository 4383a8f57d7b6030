"""
Scheduler for the Orchestrator.

An explicit state machine over the durable OrchestrationState:

    idle -> handshaking -> dispatching -> awaiting_turn -> dispatching ... -> idle

There is no in-memory run state. Every entry point (timer handler, worker
message, operator action) reads the durable record, acts, writes it back
and, when there is more to do, arms a timer. The single re-entry point for
forward progress is the advance-queue timer, so a restarted process is
indistinguishable from a fresh tick of the same machine.
"""

from typing import Awaitable, Callable, Optional

from shared.config import ControlConfig
from shared.errors import LockTimeout, StoreIOError, SurfaceUnavailable
from shared.logging import get_logger, turn_context
from shared.messages import HandshakeComplete, RunTask, StartRun, StopRun, TaskCompleted

from .channel import WorkerChannel
from .models import BatchStatus, OrchestrationState, Phase, ResultRecord, Task
from .oplog import OperatorLog
from .store import BatchQueue, DurableStore, PayloadStore, ResultSink
from .supervisor import STATE_KEY, WATCHDOG, LockSupervisor, turn_key
from .timers import DurableTimers

log = get_logger("orchestrator", "scheduler")

ADVANCE = "advance-queue"


class Scheduler:
    """
    Owns the queue's forward progress.

    At most one turn is in flight (the supervisor's lock). Within a batch
    tasks go in index order; batches go in insertion order.
    """

    def __init__(
        self,
        store: DurableStore,
        queue: BatchQueue,
        payloads: PayloadStore,
        sink: ResultSink,
        timers: DurableTimers,
        supervisor: LockSupervisor,
        channel: WorkerChannel,
        config: ControlConfig,
        oplog: Optional[OperatorLog] = None,
        on_drained: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.store = store
        self.queue = queue
        self.payloads = payloads
        self.sink = sink
        self.timers = timers
        self.supervisor = supervisor
        self.channel = channel
        self.config = config
        self.oplog = oplog or OperatorLog()
        self.on_drained = on_drained

        timers.register(ADVANCE, self.advance)
        timers.register(WATCHDOG, self.on_watchdog_fired)

    # ==================== State ====================

    def state(self) -> OrchestrationState:
        return OrchestrationState.from_dict(self.store.get(STATE_KEY) or {})

    def phase(self) -> Phase:
        return self.state().phase

    def _update(self, **fields) -> None:
        self.store.set(STATE_KEY, fields)

    def _arm_advance(self, delay_name: str) -> None:
        self.timers.arm(ADVANCE, self.config.delay(delay_name))

    # ==================== Run control ====================

    async def start(self) -> str:
        """
        Begin (or resume) processing.

        Returns "busy" if a turn is already in flight, else "started".
        Raises SurfaceUnavailable if the worker's surface is not ready.
        """
        state = self.state()
        if state.is_typing:
            self.oplog.write("A turn is already in flight; start ignored")
            return "busy"

        try:
            health = await self.channel.probe()
            if not health.get("surface_ready"):
                raise SurfaceUnavailable("Worker is up but the automation surface is not ready")
        except SurfaceUnavailable as e:
            self.oplog.write(f"Cannot start: {e}", level="ERROR")
            raise

        self._update(is_processing=True, surface_handle=health.get("surface_handle"))
        log.info("orchestrator.scheduler.started",
                 surface_handle=health.get("surface_handle"),
                 prompt_sent=state.prompt_sent)
        self.oplog.write("Processing started")

        if not state.prompt_sent:
            await self._handshake()
        else:
            self._arm_advance("on_start")
        return "started"

    async def stop(self) -> None:
        """Clear timers and state unconditionally; ask the worker to stop."""
        self.timers.clear_all()
        self.store.clear(STATE_KEY)
        log.info("orchestrator.scheduler.stopped")
        self.oplog.write("Processing stopped")
        await self.channel.send(StopRun())

    async def recover(self) -> None:
        """
        Bring timers back in line with the durable record after a restart.

        Persisted timers have already been restored by DurableTimers.
        """
        state = self.state()
        if not state.is_processing:
            log.info("orchestrator.scheduler.recover_idle")
            return

        if state.is_typing:
            if state.typing_started_at is None:
                # Lock with no start time can never expire on its own
                self.supervisor.release()
                self._arm_advance("on_resume")
            elif not self.timers.is_armed(WATCHDOG):
                self.supervisor.arm_watchdog(self.supervisor.remaining(state))
        else:
            self._arm_advance("on_resume")

        log.info("orchestrator.scheduler.recovered",
                 phase=state.phase.value, locked=state.is_typing)
        self.oplog.write(f"Resumed after restart ({state.phase.value})")

    # ==================== Advance ====================

    async def advance(self) -> None:
        """Advance-queue timer handler."""
        state = self.state()
        if not state.is_processing or state.is_typing:
            return
        if not state.prompt_sent:
            await self._handshake()
        else:
            await self.dispatch_next()

    async def _handshake(self) -> None:
        if not self.supervisor.acquire():
            return
        log.info("orchestrator.scheduler.handshake_started")
        if not await self.channel.send(StartRun()):
            self.supervisor.release()
            self.oplog.write("Handshake could not be delivered to the worker; retrying",
                             level="WARNING")
            self._arm_advance("after_error")

    async def dispatch_next(self) -> None:
        """Dispatch the next pending task, or drain if there is none."""
        if self.state().is_typing:
            log.debug("orchestrator.scheduler.dispatch_skipped_locked")
            return

        try:
            await self._dispatch()
        except Exception as e:
            log.exception(e, "orchestrator.scheduler.dispatch_error", {})
            self.oplog.write(f"Dispatch error: {e}", level="ERROR")
            state = self.state()
            if state.is_typing and state.current_batch_id is not None:
                self.supervisor.release()
            if state.is_processing:
                self._arm_advance("after_error")

    async def _dispatch(self) -> None:
        batch = self.queue.first_incomplete()
        if batch is None:
            await self._drain()
            return

        try:
            payloads = self.payloads.load(batch.id)
        except StoreIOError as e:
            log.warning("orchestrator.scheduler.payload_unreadable", batch_id=batch.id, error=str(e))
            payloads = None

        if not isinstance(payloads, list) or not payloads:
            self.queue.mark_complete(batch.id)
            log.warning("orchestrator.scheduler.batch_skipped", batch_id=batch.id, reason="no_tasks")
            self.oplog.write(f"Batch '{batch.name}' has no readable tasks; marked complete",
                             level="WARNING")
            self._arm_advance("after_skip")
            return

        if batch.current_index >= len(payloads):
            self.queue.mark_complete(batch.id)
            log.info("orchestrator.scheduler.batch_exhausted",
                     batch_id=batch.id, current_index=batch.current_index)
            self._arm_advance("after_skip")
            return

        task = Task.from_payload(batch.current_index, payloads[batch.current_index])
        with turn_context(batch.id, task.index):
            if not self.supervisor.acquire(batch.id, task.index):
                return
            if batch.status == BatchStatus.PENDING:
                self.queue.mark_processing(batch.id)

            log.info("orchestrator.scheduler.task_dispatched",
                     title=task.display_title, total=batch.total_count)
            self.oplog.write(
                f"Task {task.index + 1}/{batch.total_count} of '{batch.name}': {task.display_title}"
            )

            message = RunTask(
                task=task.payload,
                batch_id=batch.id,
                task_index=task.index,
                display_title=task.display_title,
            )
            if not await self.channel.send(message):
                self.supervisor.release()
                self.oplog.write("Task could not be delivered to the worker; backing off",
                                 level="WARNING")
                self._arm_advance("after_error")

    async def _drain(self) -> None:
        self.timers.clear_all()
        self.store.clear(STATE_KEY)
        log.info("orchestrator.scheduler.queue_drained")
        self.oplog.write("Queue drained: all batches complete")
        if self.on_drained is not None:
            await self.on_drained()

    # ==================== Worker messages ====================

    async def on_handshake_complete(self, message: HandshakeComplete) -> None:
        state = self.state()
        if not state.is_processing or state.prompt_sent:
            log.info("orchestrator.scheduler.handshake_ignored", reason="not_expected")
            return
        if state.is_typing:
            if state.current_batch_id is not None:
                log.info("orchestrator.scheduler.handshake_ignored", reason="task_in_flight")
                return
            self.supervisor.release()

        if message.error:
            log.warning("orchestrator.scheduler.handshake_failed", error=message.error)
            self.oplog.write(f"Handshake failed ({message.error}); retrying", level="WARNING")
            self._arm_advance("after_timeout")
            return

        self._update(prompt_sent=True)
        log.info("orchestrator.scheduler.handshake_complete")
        self._arm_advance("after_handshake")

    async def on_task_completed(self, message: TaskCompleted) -> None:
        with turn_context(message.batch_id, message.task_index):
            await self._complete(message)

    async def _complete(self, message: TaskCompleted) -> None:
        state = self.state()
        batch = self.queue.get(message.batch_id)
        index = message.task_index

        if batch is None or batch.is_complete:
            log.info("orchestrator.scheduler.completion_ignored", reason="batch_gone_or_complete")
            return
        if index != batch.current_index:
            log.info("orchestrator.scheduler.completion_ignored",
                     reason="stale_index", current_index=batch.current_index)
            return
        if state.is_typing and not state.holds(batch.id, index):
            log.info("orchestrator.scheduler.completion_ignored",
                     reason="lock_held_for_other_turn",
                     held_by=turn_key(state.current_batch_id, state.current_task_index))
            return

        try:
            if state.is_typing:
                self.supervisor.release()
            if state.retry_key == turn_key(batch.id, index):
                self.supervisor.reset_retries()

            if self.sink.has(batch.id, index, batch.run):
                log.info("orchestrator.scheduler.result_exists", run=batch.run)
            else:
                record = ResultRecord.from_turn(
                    message.result, message.original_payload, batch.id, index, run=batch.run
                )
                self.sink.append(record)
            batch = self.queue.advance_cursor(batch.id)
        except StoreIOError as e:
            log.exception(e, "orchestrator.scheduler.result_write_failed", {})
            self.oplog.write(f"Could not record result: {e}", level="ERROR")
            if state.is_processing:
                self._arm_advance("after_error")
            return

        if message.error:
            self.oplog.write(
                f"Task {index + 1}/{batch.total_count} finished degraded ({message.error})",
                source="worker", level="WARNING",
            )
        else:
            self.oplog.write(f"Task {index + 1}/{batch.total_count} complete")
        log.info("orchestrator.scheduler.task_completed",
                 current_index=batch.current_index, degraded=bool(message.error))

        if batch.is_complete:
            log.info("orchestrator.scheduler.batch_complete", batch_id=batch.id)
            self.oplog.write(f"Batch '{batch.name}' complete")

        if self.state().is_processing:
            self._arm_advance("after_completion")

    # ==================== Watchdog ====================

    async def on_watchdog_fired(self) -> None:
        """Stuck-turn-watchdog timer handler."""
        state = self.state()
        if not state.is_typing:
            return

        remaining = self.supervisor.remaining(state)
        if remaining > 0:
            self.supervisor.arm_watchdog(remaining)
            return

        error = LockTimeout(
            f"Turn {turn_key(state.current_batch_id, state.current_task_index)} "
            f"exceeded {self.supervisor.deadline:.0f}s"
        )
        attempts = self.supervisor.force_release()
        log.warning("orchestrator.scheduler.turn_timeout",
                    error=error.code, message=str(error), attempts=attempts)
        self.oplog.write(f"{error}; lock cleared (attempt {attempts})", level="WARNING")

        delay = "after_timeout"
        limit = self.config.max_turn_retries
        if state.current_batch_id is not None and limit and attempts > limit:
            try:
                self._give_up(state.current_batch_id, state.current_task_index, attempts)
            except StoreIOError as e:
                log.exception(e, "orchestrator.scheduler.give_up_failed", {"attempts": attempts})
                self.oplog.write(f"Could not finalise timed-out task: {e}", level="ERROR")
                delay = "after_error"

        if state.is_processing:
            self._arm_advance(delay)

    def _give_up(self, batch_id: str, task_index: int, attempts: int) -> None:
        """Finalise a task that keeps timing out with a degraded result."""
        batch = self.queue.get(batch_id)
        if batch is None or batch.is_complete or batch.current_index != task_index:
            return

        with turn_context(batch_id, task_index):
            if not self.sink.has(batch_id, task_index, batch.run):
                payloads = self.payloads.load(batch_id) or []
                payload = payloads[task_index] if task_index < len(payloads) else {}
                record = ResultRecord.from_turn(
                    {"reasoning": f"Turn timed out after {attempts} attempts"},
                    payload,
                    batch_id,
                    task_index,
                    run=batch.run,
                )
                self.sink.append(record)
            self.queue.advance_cursor(batch_id)
            self.supervisor.reset_retries()
            log.error("orchestrator.scheduler.task_abandoned", attempts=attempts)
            self.oplog.write(
                f"Task {task_index + 1} of '{batch.name}' gave up after {attempts} timeouts",
                level="ERROR",
            )
