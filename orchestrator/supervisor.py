"""
Lock & Timeout Supervisor.

The lock is a single slot held only in the durable OrchestrationState:
at most one turn is in flight. A watchdog timer force-clears a lock held
longer than the turn deadline.
"""

import time
from typing import Callable, Optional

from shared.logging import get_logger

from .models import OrchestrationState
from .store import DurableStore
from .timers import DurableTimers

log = get_logger("orchestrator", "supervisor")

STATE_KEY = "orchestration"
WATCHDOG = "stuck-turn-watchdog"


def turn_key(batch_id: Optional[str], task_index: Optional[int]) -> str:
    if batch_id is None:
        return "handshake"
    return f"{batch_id}:{task_index}"


class LockSupervisor:
    """Acquire/release the single-slot lock and own the watchdog timer."""

    def __init__(
        self,
        store: DurableStore,
        timers: DurableTimers,
        deadline: float = 180.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.timers = timers
        self.deadline = deadline
        self.clock = clock

    def state(self) -> OrchestrationState:
        return OrchestrationState.from_dict(self.store.get(STATE_KEY) or {})

    def is_locked(self) -> bool:
        return self.state().is_typing

    def acquire(self, batch_id: Optional[str] = None, task_index: Optional[int] = None) -> bool:
        """
        Take the lock for a turn and arm the watchdog.

        Returns False (and changes nothing) if the lock is already held.
        A handshake turn acquires with no identity.
        """
        if self.is_locked():
            log.debug("orchestrator.supervisor.acquire_refused",
                      batch_id=batch_id, task_index=task_index)
            return False

        self.store.set(STATE_KEY, {
            "is_typing": True,
            "typing_started_at": self.clock(),
            "current_batch_id": batch_id,
            "current_task_index": task_index,
        })
        self.arm_watchdog()
        log.info("orchestrator.supervisor.lock_acquired",
                 batch_id=batch_id, task_index=task_index)
        return True

    def release(self) -> None:
        """Clear the watchdog and the lock."""
        self.timers.clear(WATCHDOG)
        self.store.set(STATE_KEY, {
            "is_typing": False,
            "typing_started_at": None,
            "current_batch_id": None,
            "current_task_index": None,
        })
        log.info("orchestrator.supervisor.lock_released")

    def force_release(self) -> int:
        """
        Clear a stuck lock.

        Returns how many times in a row this same turn has now been
        force-released.
        """
        state = self.state()
        key = turn_key(state.current_batch_id, state.current_task_index)
        count = state.retry_count + 1 if state.retry_key == key else 1

        self.timers.clear(WATCHDOG)
        self.store.set(STATE_KEY, {
            "is_typing": False,
            "typing_started_at": None,
            "current_batch_id": None,
            "current_task_index": None,
            "retry_key": key,
            "retry_count": count,
        })
        log.warning("orchestrator.supervisor.lock_forced",
                    turn=key, attempts=count,
                    held_for=round(state.lock_age(self.clock()) or 0, 1))
        return count

    def reset_retries(self) -> None:
        self.store.set(STATE_KEY, {"retry_key": None, "retry_count": 0})

    def remaining(self, state: Optional[OrchestrationState] = None) -> float:
        """Seconds left before the held lock counts as stuck."""
        state = state or self.state()
        age = state.lock_age(self.clock())
        if age is None:
            return 0.0
        return max(0.0, self.deadline - age)

    def is_expired(self, state: Optional[OrchestrationState] = None) -> bool:
        state = state or self.state()
        return state.is_typing and self.remaining(state) <= 0

    def arm_watchdog(self, delay: Optional[float] = None) -> None:
        self.timers.arm(WATCHDOG, self.deadline if delay is None else delay)
