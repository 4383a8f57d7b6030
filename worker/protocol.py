"""
Interaction Protocol: one turn against the automation surface.

    find input -> reset -> type in chunks -> submit -> await acceptance
    -> await quiescence -> harvest -> parse

run_task() always produces exactly one TaskCompleted. Turn-level errors
are folded into a degraded result; they never escape.
"""

import asyncio
import random
from typing import Awaitable, Callable, Iterator, Optional

from browser.base import AutomationSurface
from shared.config import ProtocolConfig
from shared.errors import ExtractorError, SubmissionFailed, SurfaceNotFound
from shared.logging import get_logger, turn_context
from shared.messages import HandshakeComplete, RunTask, StartRun, TaskCompleted

from .parsing import extract_structured
from .prompts import build_prompt
from .quiescence import await_quiescence

log = get_logger("worker", "protocol")

Notify = Callable[[str], Awaitable[None]]


def chunked(text: str, size: int) -> Iterator[str]:
    for i in range(0, len(text), size):
        yield text[i:i + size]


class InteractionProtocol:
    """Drives the surface through a single submit/await/harvest turn."""

    def __init__(
        self,
        surface: AutomationSurface,
        config: ProtocolConfig,
        notify: Optional[Notify] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.surface = surface
        self.config = config
        self.notify = notify
        self.rng = rng or random.Random()
        self.sleep = sleep

    async def _notify(self, message: str) -> None:
        """Send an operator line; a failure is logged only."""
        if self.notify is None:
            return
        try:
            await self.notify(message)
        except Exception as e:
            log.exception(e, "worker.protocol.notify_failed", {"line": message})

    # ==================== Turns ====================

    async def run_task(self, message: RunTask) -> TaskCompleted:
        """Run one task turn and build its completion message."""
        with turn_context(message.batch_id, message.task_index):
            title = message.display_title or "Untitled"
            start_time = None
            error = None
            try:
                await self._notify(f"Processing: {title[:15]}...")
                prompt = build_prompt(message.task)
                start_time = log.turn_start("task", prompt, title=title)
                text = await self._turn(prompt)
                result = extract_structured(text)
                log.turn_complete("task", text, start_time,
                                  parsed="personName" in result or "companyName" in result)
            except ExtractorError as e:
                error = e.code
                result = {"reasoning": f"Script Error: {e}"}
                log.turn_error("task", str(e), e.code, start_time)
                await self._notify(f"Error: {e}")
            except Exception as e:
                error = "script_error"
                result = {"reasoning": f"Script Error: {e}"}
                log.exception(e, "worker.protocol.turn_crashed", {"title": title})
                await self._notify(f"Error: {e}")

            return TaskCompleted(
                result=result,
                original_payload=message.task,
                batch_id=message.batch_id,
                task_index=message.task_index,
                error=error,
            )

    async def run_handshake(self, message: StartRun) -> HandshakeComplete:
        """
        Send the one-time preamble, if any, and discard the response.

        An empty preamble is acknowledged immediately.
        """
        preamble = message.preamble if message.preamble is not None else self.config.preamble
        if not preamble:
            log.info("worker.protocol.handshake_skipped")
            return HandshakeComplete()

        start_time = log.turn_start("handshake", preamble)
        try:
            text = await self._turn(preamble)
        except ExtractorError as e:
            log.turn_error("handshake", str(e), e.code, start_time)
            return HandshakeComplete(error=e.code)
        except Exception as e:
            log.exception(e, "worker.protocol.handshake_crashed", {})
            return HandshakeComplete(error="script_error")

        log.turn_complete("handshake", text, start_time)
        return HandshakeComplete()

    # ==================== Steps ====================

    async def _turn(self, text: str) -> str:
        c = self.config
        surface = self.surface

        if not await surface.find_input():
            raise SurfaceNotFound("Input box not found")

        initial_count = await surface.output_count()

        await surface.clear_input()
        await self.sleep(c.reset_pause)

        for chunk in chunked(text, c.chunk_size):
            await surface.type_chunk(chunk)
            await self.sleep(self.rng.uniform(c.chunk_pause_min, c.chunk_pause_max))

        await self.sleep(c.settle_pause)
        await surface.press_submit()
        await self.sleep(c.submit_pause)
        log.debug("worker.protocol.submitted", length=len(text), initial_count=initial_count)

        await self._await_acceptance(initial_count)
        log.debug("worker.protocol.accepted")

        length = await await_quiescence(
            surface.latest_output_length,
            threshold=c.stable_threshold,
            interval=c.stable_interval,
            ceiling=c.stable_ceiling,
            sleep=self.sleep,
        )
        log.debug("worker.protocol.quiescent", length=length)
        return await surface.latest_output_text()

    async def _await_acceptance(self, initial_count: int) -> None:
        """
        Wait for a sign the surface took the input: a new output unit or a
        busy indicator. Each failed poll clicks send, or nudges the input
        when the send control is disabled.
        """
        c = self.config
        for attempt in range(c.submit_attempts):
            if await self.surface.output_count() > initial_count or await self.surface.is_busy():
                return

            if await self.surface.click_submit():
                log.debug("worker.protocol.send_clicked", attempt=attempt + 1)
            else:
                await self.surface.nudge_input()
                log.debug("worker.protocol.input_nudged", attempt=attempt + 1)

            await self.sleep(c.submit_poll_interval)

        raise SubmissionFailed(f"Surface did not accept input after {c.submit_attempts} attempts")
