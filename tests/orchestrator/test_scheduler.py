"""
Tests for orchestrator/scheduler.py

Timers are armed with long delays (see control_config) and never fire on
their own here; tests drive the state machine by calling the timer
handlers (advance, on_watchdog_fired) directly, the way the timers would.
"""

import asyncio
import dataclasses
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from orchestrator.main import ControlService
from orchestrator.models import BatchStatus, Phase, ResultRecord
from orchestrator.scheduler import ADVANCE
from orchestrator.supervisor import STATE_KEY, WATCHDOG
from shared.errors import StoreIOError, SurfaceUnavailable
from shared.messages import HandshakeComplete, RunTask, StartRun, StopRun


class TestStart:
    """Tests for start()."""

    @pytest.mark.asyncio
    async def test_start_sends_handshake(self, service, channel):
        assert await service.start() == "started"

        state = service.scheduler.state()
        assert state.is_processing
        assert state.surface_handle == "https://gemini.google.com/app/abc123"
        assert state.phase == Phase.HANDSHAKING
        assert len(channel.sent_of(StartRun)) == 1

    @pytest.mark.asyncio
    async def test_start_when_busy(self, service, channel):
        service.supervisor.acquire("b1", 0)
        assert await service.start() == "busy"
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_start_worker_unreachable(self, service, channel):
        channel.reachable = False
        with pytest.raises(SurfaceUnavailable):
            await service.start()
        assert not service.scheduler.state().is_processing
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_start_surface_not_ready(self, service, channel):
        channel.health["surface_ready"] = False
        with pytest.raises(SurfaceUnavailable):
            await service.start()
        assert service.scheduler.phase() == Phase.IDLE
        assert "Cannot start" in service.oplog.tail(1)[0]["message"]

    @pytest.mark.asyncio
    async def test_restart_after_handshake_skips_it(self, service, channel, clock, begin):
        await begin(service)
        await service.stop()
        service.scheduler._update(prompt_sent=True)

        assert await service.start() == "started"
        assert len(channel.sent_of(StartRun)) == 1
        assert service.timers.fire_at(ADVANCE) == clock.now + 35


class TestHandshake:
    """Tests for the handshake turn."""

    @pytest.mark.asyncio
    async def test_handshake_complete(self, service, clock):
        await service.start()
        await service.handle_message(HandshakeComplete())

        state = service.scheduler.state()
        assert state.prompt_sent
        assert not state.is_typing
        assert state.phase == Phase.DISPATCHING
        assert service.timers.fire_at(ADVANCE) == clock.now + 31

    @pytest.mark.asyncio
    async def test_handshake_error_retries_later(self, service, channel, clock):
        await service.start()
        await service.handle_message(HandshakeComplete(error="surface_not_found"))

        state = service.scheduler.state()
        assert not state.prompt_sent
        assert not state.is_typing
        assert service.timers.fire_at(ADVANCE) == clock.now + 32

        await service.scheduler.advance()
        assert len(channel.sent_of(StartRun)) == 2

    @pytest.mark.asyncio
    async def test_handshake_send_failure_backs_off(self, service, channel, clock):
        channel.accept = False
        await service.start()

        assert not service.supervisor.is_locked()
        assert service.timers.fire_at(ADVANCE) == clock.now + 34

    @pytest.mark.asyncio
    async def test_unexpected_handshake_ignored(self, service, clock):
        await service.handle_message(HandshakeComplete())
        assert not service.scheduler.state().prompt_sent
        assert service.timers.fire_at(ADVANCE) is None

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, service, channel, clock):
        await service.start()
        clock.advance(181)
        await service.scheduler.on_watchdog_fired()

        state = service.scheduler.state()
        assert not state.is_typing
        assert state.retry_key == "handshake"
        assert service.timers.fire_at(ADVANCE) == clock.now + 32

        await service.scheduler.advance()
        assert len(channel.sent_of(StartRun)) == 2


class TestDispatch:
    """Tests for dispatching tasks."""

    @pytest.mark.asyncio
    async def test_dispatches_first_task(self, service, channel, clock, jobs, begin):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()

        [message] = channel.sent_of(RunTask)
        assert message.batch_id == batch.id
        assert message.task_index == 0
        assert message.display_title == "Job 0"
        assert message.task == jobs(2)[0]

        state = service.scheduler.state()
        assert state.phase == Phase.AWAITING_TURN
        assert state.holds(batch.id, 0)
        assert service.queue.get(batch.id).status == BatchStatus.PROCESSING
        assert service.timers.fire_at(WATCHDOG) == clock.now + 180

    @pytest.mark.asyncio
    async def test_dispatch_while_locked_is_noop(self, service, channel, jobs, begin, dispatched):
        service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        await service.scheduler.dispatch_next()
        await service.scheduler.advance()

        assert len(dispatched(channel)) == 1

    @pytest.mark.asyncio
    async def test_empty_batch_is_skipped(self, service, channel, clock, begin):
        batch = service.ingest("jobs-export-empty.json", [])
        await begin(service)

        with patch.object(service.supervisor, "acquire", wraps=service.supervisor.acquire) as acquire:
            await service.scheduler.advance()
            acquire.assert_not_called()

        assert service.queue.get(batch.id).status == BatchStatus.COMPLETE
        assert channel.sent_of(RunTask) == []
        assert service.timers.fire_at(ADVANCE) == clock.now + 33

    @pytest.mark.asyncio
    async def test_missing_payloads_skip_batch(self, service, channel, jobs, begin, dispatched):
        broken = service.ingest("jobs-export-broken.json", jobs(1))
        good = service.ingest("jobs-export-good.json", jobs(1))
        service.payloads.delete(broken.id)
        await begin(service)

        await service.scheduler.advance()
        assert service.queue.get(broken.id).is_complete
        await service.scheduler.advance()
        assert dispatched(channel) == [(good.id, 0)]

    @pytest.mark.asyncio
    async def test_send_failure_releases_and_backs_off(self, service, channel, clock, jobs, begin):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        channel.accept = False
        await service.scheduler.advance()

        assert not service.supervisor.is_locked()
        assert not service.timers.is_armed(WATCHDOG)
        assert service.timers.fire_at(ADVANCE) == clock.now + 34
        assert service.queue.get(batch.id).current_index == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off(self, service, clock, jobs, begin):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)

        with patch.object(service.queue, "first_incomplete", side_effect=RuntimeError("boom")):
            await service.scheduler.advance()

        assert not service.supervisor.is_locked()
        assert service.timers.fire_at(ADVANCE) == clock.now + 34
        assert "Dispatch error" in service.oplog.tail(1)[0]["message"]

    @pytest.mark.asyncio
    async def test_drain_when_queue_empty(self, service, begin):
        service.scheduler.on_drained = AsyncMock()
        await begin(service)
        await service.scheduler.advance()

        service.scheduler.on_drained.assert_awaited_once()
        assert service.scheduler.phase() == Phase.IDLE
        assert service.timers.fire_at(ADVANCE) is None


class TestCompletion:
    """Tests for TaskCompleted handling."""

    @pytest.mark.asyncio
    async def test_completion_records_and_advances(self, service, clock, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0))

        [record] = service.sink.all()
        assert record.batch_id == batch.id
        assert record.task_index == 0
        assert record.person_name == "Jane Doe"
        assert service.queue.get(batch.id).current_index == 1
        assert not service.supervisor.is_locked()
        assert not service.timers.is_armed(WATCHDOG)
        assert service.timers.fire_at(ADVANCE) == clock.now + 30

    @pytest.mark.asyncio
    async def test_duplicate_completion_ignored(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0))
        await service.handle_message(make_completed(batch.id, 0))

        assert service.sink.count() == 1
        assert service.queue.get(batch.id).current_index == 1

    @pytest.mark.asyncio
    async def test_stale_index_ignored(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(3))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 2))

        assert service.sink.count() == 0
        assert service.scheduler.state().holds(batch.id, 0)

    @pytest.mark.asyncio
    async def test_unknown_batch_ignored(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed("no-such-batch", 0))

        assert service.sink.count() == 0
        assert service.scheduler.state().holds(batch.id, 0)

    @pytest.mark.asyncio
    async def test_completion_for_other_lock_holder_ignored(self, service, jobs, begin, make_completed):
        first = service.ingest("jobs-export-one.json", jobs(1))
        second = service.ingest("jobs-export-two.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(second.id, 0))

        assert service.sink.count() == 0
        assert service.queue.get(second.id).current_index == 0
        assert service.scheduler.state().holds(first.id, 0)

    @pytest.mark.asyncio
    async def test_existing_record_still_advances(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        service.sink.append(ResultRecord.from_turn({"reasoning": "earlier"}, {}, batch.id, 0))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0))

        assert service.sink.count() == 1
        assert service.sink.all()[0].reasoning == "earlier"
        assert service.queue.get(batch.id).current_index == 1

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_advance(self, service, clock, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()

        with patch.object(service.sink, "append", side_effect=StoreIOError("disk full")):
            await service.handle_message(make_completed(batch.id, 0))

        assert service.queue.get(batch.id).current_index == 0
        assert not service.supervisor.is_locked()
        assert service.timers.fire_at(ADVANCE) == clock.now + 34

    @pytest.mark.asyncio
    async def test_cursor_write_failure_backs_off(
        self, service, channel, clock, jobs, begin, make_completed, dispatched
    ):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()

        with patch.object(service.queue, "advance_cursor", side_effect=StoreIOError("disk full")):
            await service.handle_message(make_completed(batch.id, 0))

        assert service.sink.count() == 1
        assert not service.supervisor.is_locked()
        assert service.scheduler.state().is_processing
        assert service.timers.fire_at(ADVANCE) == clock.now + 34

        # The retried turn finds its result already recorded and only moves on
        await service.scheduler.advance()
        assert dispatched(channel)[-1] == (batch.id, 0)
        await service.handle_message(make_completed(batch.id, 0))
        assert service.sink.count() == 1
        assert service.queue.get(batch.id).current_index == 1

    @pytest.mark.asyncio
    async def test_reset_batch_records_new_results(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0, result={"companyName": "OldCo"}))

        service.reset_batch(batch.id)
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0, result={"companyName": "NewCo"}))

        records = service.sink.for_batch(batch.id)
        assert [r.company_name for r in records] == ["OldCo", "NewCo"]
        assert [r.run for r in records] == [0, 1]
        assert service.queue.get(batch.id).is_complete

    @pytest.mark.asyncio
    async def test_degraded_completion_is_recorded(self, service, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        await service.handle_message(make_completed(
            batch.id, 0,
            result={"reasoning": "Script Error: Input box not found"},
            error="surface_not_found",
        ))

        assert service.sink.all()[0].reasoning == "Script Error: Input box not found"
        assert service.queue.get(batch.id).is_complete
        assert "degraded" in service.oplog.tail(2)[0]["message"]

    @pytest.mark.asyncio
    async def test_completion_after_stop_is_recorded_without_scheduling(
        self, service, channel, jobs, begin, make_completed
    ):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        await service.stop()
        await service.handle_message(make_completed(batch.id, 0))

        assert service.sink.count() == 1
        assert service.queue.get(batch.id).current_index == 1
        assert service.timers.fire_at(ADVANCE) is None
        assert service.scheduler.phase() == Phase.IDLE


class TestWatchdog:
    """Tests for the stuck-turn watchdog."""

    @pytest.mark.asyncio
    async def test_early_fire_rearms_for_remaining(self, service, clock, jobs, begin):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        clock.advance(100)
        await service.scheduler.on_watchdog_fired()

        assert service.scheduler.state().holds(batch.id, 0)
        assert service.timers.fire_at(WATCHDOG) == clock.now + 80

    @pytest.mark.asyncio
    async def test_fire_without_lock_is_noop(self, service, clock, begin):
        await begin(service)
        await service.scheduler.on_watchdog_fired()
        assert service.scheduler.state().retry_count == 0

    @pytest.mark.asyncio
    async def test_timeout_clears_lock_and_redispatches(
        self, service, channel, clock, jobs, begin, dispatched
    ):
        batch = service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        clock.advance(181)
        await service.scheduler.on_watchdog_fired()

        state = service.scheduler.state()
        assert not state.is_typing
        assert state.retry_count == 1
        assert service.timers.fire_at(ADVANCE) == clock.now + 32

        await service.scheduler.advance()
        assert dispatched(channel) == [(batch.id, 0), (batch.id, 0)]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(
        self, control_config, channel, clock, jobs, begin, dispatched
    ):
        config = dataclasses.replace(control_config, max_turn_retries=2)
        service = ControlService(config, channel=channel, clock=clock)
        try:
            batch = service.ingest("jobs-export-acme.json", jobs(2))
            await begin(service)

            for _ in range(3):
                await service.scheduler.advance()
                clock.advance(181)
                await service.scheduler.on_watchdog_fired()

            [record] = service.sink.all()
            assert record.task_index == 0
            assert record.reasoning == "Turn timed out after 3 attempts"
            assert service.queue.get(batch.id).current_index == 1
            assert service.scheduler.state().retry_count == 0

            await service.scheduler.advance()
            assert dispatched(channel)[-1] == (batch.id, 1)
        finally:
            await service.timers.shutdown()

    @pytest.mark.asyncio
    async def test_give_up_write_failure_backs_off(
        self, control_config, channel, clock, jobs, begin, dispatched
    ):
        config = dataclasses.replace(control_config, max_turn_retries=1)
        service = ControlService(config, channel=channel, clock=clock)
        try:
            batch = service.ingest("jobs-export-acme.json", jobs(2))
            await begin(service)

            await service.scheduler.advance()
            clock.advance(181)
            await service.scheduler.on_watchdog_fired()
            await service.scheduler.advance()
            clock.advance(181)
            with patch.object(service.sink, "append", side_effect=StoreIOError("disk full")):
                await service.scheduler.on_watchdog_fired()

            state = service.scheduler.state()
            assert state.is_processing
            assert not state.is_typing
            assert service.queue.get(batch.id).current_index == 0
            assert service.timers.fire_at(ADVANCE) == clock.now + 34

            await service.scheduler.advance()
            assert dispatched(channel)[-1] == (batch.id, 0)
        finally:
            await service.timers.shutdown()

    @pytest.mark.asyncio
    async def test_successful_retry_resets_count(self, service, clock, jobs, begin, make_completed):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        clock.advance(181)
        await service.scheduler.on_watchdog_fired()
        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0))

        state = service.scheduler.state()
        assert state.retry_key is None
        assert state.retry_count == 0


class TestEndToEnd:
    """A full run with a stuck turn in the middle."""

    @pytest.mark.asyncio
    async def test_three_tasks_with_one_timeout(
        self, service, channel, clock, jobs, begin, make_completed, dispatched
    ):
        service.scheduler.on_drained = AsyncMock()
        batch = service.ingest("jobs-export-acme.json", jobs(3))
        await begin(service)

        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 0))

        await service.scheduler.advance()
        clock.advance(181)
        await service.scheduler.on_watchdog_fired()

        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 1))

        await service.scheduler.advance()
        await service.handle_message(make_completed(batch.id, 2))

        await service.scheduler.advance()

        assert dispatched(channel) == [
            (batch.id, 0), (batch.id, 1), (batch.id, 1), (batch.id, 2),
        ]
        assert [r.task_index for r in service.sink.all()] == [0, 1, 2]
        assert service.queue.get(batch.id).is_complete
        assert service.scheduler.phase() == Phase.IDLE
        service.scheduler.on_drained.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_late_completion_counts_once(
        self, service, clock, jobs, begin, make_completed
    ):
        """The timed-out attempt reports after the retry was dispatched."""
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        clock.advance(181)
        await service.scheduler.on_watchdog_fired()
        await service.scheduler.advance()

        await service.handle_message(make_completed(batch.id, 0))
        await service.handle_message(make_completed(batch.id, 0))

        assert service.sink.count() == 1
        assert service.queue.get(batch.id).current_index == 1

    @pytest.mark.asyncio
    async def test_batches_processed_in_order(
        self, service, channel, jobs, begin, make_completed, dispatched
    ):
        first = service.ingest("jobs-export-one.json", jobs(1))
        second = service.ingest("jobs-export-two.json", jobs(1))
        await begin(service)

        for batch in (first, second):
            await service.scheduler.advance()
            await service.handle_message(make_completed(batch.id, 0))

        assert dispatched(channel) == [(first.id, 0), (second.id, 0)]


class TestStop:
    """Tests for stop()."""

    @pytest.mark.asyncio
    async def test_stop_clears_everything(self, service, channel, jobs, begin):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        await service.stop()

        state = service.scheduler.state()
        assert not state.is_processing
        assert not state.is_typing
        assert not state.prompt_sent
        assert service.timers.fire_at(ADVANCE) is None
        assert service.timers.fire_at(WATCHDOG) is None
        assert len(channel.sent_of(StopRun)) == 1

    @pytest.mark.asyncio
    async def test_advance_after_stop_does_nothing(self, service, channel, jobs, begin, dispatched):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.stop()
        await service.scheduler.advance()
        assert dispatched(channel) == []


class TestRecovery:
    """Tests for restarting the control process mid-run."""

    @pytest_asyncio.fixture
    async def restart(self, control_config, channel, clock):
        """Factory for a second ControlService over the same data directory."""
        started = []

        async def _restart(previous: ControlService) -> ControlService:
            await previous.timers.shutdown()
            restarted = ControlService(control_config, channel=channel, clock=clock)
            started.append(restarted)
            await restarted.startup()
            return restarted

        yield _restart
        for svc in started:
            await svc.timers.shutdown()

    @pytest.mark.asyncio
    async def test_idle_restart_arms_nothing(self, service, restart):
        restarted = await restart(service)
        assert restarted.scheduler.phase() == Phase.IDLE
        assert restarted.timers.fire_at(ADVANCE) is None

    @pytest.mark.asyncio
    async def test_turn_in_flight_survives_restart(self, service, jobs, begin, make_completed, restart):
        batch = service.ingest("jobs-export-acme.json", jobs(2))
        await begin(service)
        await service.scheduler.advance()
        watchdog_at = service.timers.fire_at(WATCHDOG)

        restarted = await restart(service)
        assert restarted.scheduler.state().holds(batch.id, 0)
        assert restarted.timers.fire_at(WATCHDOG) == watchdog_at

        await restarted.handle_message(make_completed(batch.id, 0))
        assert restarted.queue.get(batch.id).current_index == 1
        assert restarted.sink.count() == 1

    @pytest.mark.asyncio
    async def test_missing_watchdog_rearmed_for_remaining(self, service, clock, jobs, begin, restart):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        clock.advance(50)
        service.timers.clear(WATCHDOG)

        restarted = await restart(service)
        assert restarted.timers.fire_at(WATCHDOG) == clock.now + 130

    @pytest.mark.asyncio
    async def test_lock_without_start_time_released(self, service, clock, jobs, begin, restart):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        service.store.set(STATE_KEY, {"typing_started_at": None})

        restarted = await restart(service)
        assert not restarted.supervisor.is_locked()
        assert restarted.timers.fire_at(ADVANCE) == clock.now + 36

    @pytest.mark.asyncio
    async def test_processing_without_timer_resumes(self, service, clock, jobs, begin, restart):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        service.timers.clear_all()

        restarted = await restart(service)
        assert restarted.scheduler.phase() == Phase.DISPATCHING
        assert restarted.timers.fire_at(ADVANCE) == clock.now + 36

    @pytest.mark.asyncio
    async def test_overdue_watchdog_fires_on_restart(self, service, clock, jobs, begin, restart):
        service.ingest("jobs-export-acme.json", jobs(1))
        await begin(service)
        await service.scheduler.advance()
        service.timers.clear(ADVANCE)
        clock.advance(200)

        restarted = await restart(service)
        await asyncio.sleep(0.05)

        state = restarted.scheduler.state()
        assert not state.is_typing
        assert state.retry_count == 1
        assert restarted.timers.fire_at(ADVANCE) == clock.now + 32
