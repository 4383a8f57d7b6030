"""
Orchestrator - the control process of the extraction relay.

Keeps a queue of batches making forward progress one turn at a time:
- Durable JSON store for state, queue and timers (atomic writes)
- Single-slot lock with a stuck-turn watchdog
- Explicit state machine re-entered only through durable timers
- Append-only result sink with CSV export
"""

from .models import Batch, BatchStatus, OrchestrationState, Phase, ResultRecord, Task
from .store import BatchQueue, DurableStore, PayloadStore, ResultSink
from .timers import DurableTimers
from .supervisor import WATCHDOG, LockSupervisor
from .scheduler import ADVANCE, Scheduler
from .channel import WorkerChannel
from .oplog import OperatorLog
from .export import CsvExporter
from .main import ControlService

__all__ = [
    # Models
    "Batch",
    "BatchStatus",
    "OrchestrationState",
    "Phase",
    "ResultRecord",
    "Task",
    # Store
    "BatchQueue",
    "DurableStore",
    "PayloadStore",
    "ResultSink",
    # Timers / lock
    "DurableTimers",
    "LockSupervisor",
    "ADVANCE",
    "WATCHDOG",
    # Scheduler
    "Scheduler",
    "WorkerChannel",
    "OperatorLog",
    "CsvExporter",
    # Main
    "ControlService",
]
