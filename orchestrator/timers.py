"""
Durable named timers.

Each timer's fire time is persisted in the DurableStore (wall clock), so a
restarted control process can restore pending timers on their original
schedule. In-memory, each armed timer is one asyncio task.

At most one pending instance per name: arming a name replaces it.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from shared.logging import get_logger

from .store import DurableStore

log = get_logger("orchestrator", "timers")

Handler = Callable[[], Awaitable[None]]


class DurableTimers:
    """Persisted one-shot alarms dispatched to registered async handlers."""

    KEY = "timers"

    def __init__(self, store: DurableStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self._handlers: dict[str, Handler] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def _record(self) -> dict:
        return self.store.get(self.KEY) or {}

    def arm(self, name: str, delay: float) -> float:
        """Arm (or re-arm) a timer to fire after delay seconds."""
        fire_at = self.clock() + max(0.0, delay)
        self.store.set(self.KEY, {name: fire_at})
        self._schedule(name, fire_at)
        log.debug("orchestrator.timers.armed", timer=name, delay=round(delay, 3))
        return fire_at

    def clear(self, name: str) -> None:
        self._cancel(name)
        if self._record().get(name) is not None:
            self.store.set(self.KEY, {name: None})

    def clear_all(self) -> None:
        for name in list(self._tasks):
            self._cancel(name)
        self.store.replace(self.KEY, {})

    def is_armed(self, name: str) -> bool:
        return self._record().get(name) is not None

    def fire_at(self, name: str) -> Optional[float]:
        return self._record().get(name)

    def restore(self) -> list[str]:
        """Reschedule every persisted timer. Overdue timers fire immediately."""
        restored = []
        for name, fire_at in self._record().items():
            if fire_at is None:
                continue
            if name not in self._handlers:
                log.warning("orchestrator.timers.unknown_timer", timer=name)
                continue
            self._schedule(name, fire_at)
            restored.append(name)
        if restored:
            log.info("orchestrator.timers.restored", timers=restored)
        return restored

    async def shutdown(self) -> None:
        """Cancel in-memory timers. Persisted fire times are kept."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _schedule(self, name: str, fire_at: float) -> None:
        self._cancel(name)
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run(name, fire_at), name=f"timer:{name}"
        )

    async def _run(self, name: str, fire_at: float) -> None:
        await asyncio.sleep(max(0.0, fire_at - self.clock()))

        # Handlers commonly re-arm their own timer
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        try:
            if self._record().get(name) != fire_at:
                return
            self.store.set(self.KEY, {name: None})

            handler = self._handlers.get(name)
            if handler is None:
                return
            log.debug("orchestrator.timers.fired", timer=name)
            await handler()
        except Exception as e:
            log.exception(e, "orchestrator.timers.handler_error", {"timer": name})
