"""
Data models for the Orchestrator.

Everything here round-trips through plain dicts so it can live in the
durable store and survive a restart of the control process.
"""

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any


class BatchStatus(str, Enum):
    """Batch lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"


class Phase(str, Enum):
    """Scheduler phase, derived from the durable OrchestrationState."""
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    DISPATCHING = "dispatching"
    AWAITING_TURN = "awaiting_turn"


def new_batch_id() -> str:
    """Time-based + random id, stable for the life of the batch."""
    return f"{int(time.time() * 1000)}-{random.randrange(16 ** 6):06x}"


@dataclass(frozen=True)
class Task:
    """One unit of work inside a Batch. Read-only to the Scheduler."""
    index: int
    payload: dict
    display_title: str = "Untitled"

    @classmethod
    def from_payload(cls, index: int, payload: Any) -> "Task":
        if not isinstance(payload, dict):
            payload = {"value": payload}
        title = payload.get("title") or payload.get("jobTitle") or "Untitled"
        return cls(index=index, payload=payload, display_title=str(title))


@dataclass
class Batch:
    """
    An ordered, named collection of Tasks plus its processing cursor.

    Only metadata lives here; the task list itself is in the PayloadStore.
    """
    id: str
    name: str
    total_count: int
    current_index: int = 0
    status: BatchStatus = BatchStatus.PENDING
    filename: str = ""
    created_at: float = field(default_factory=time.time)
    # Bumped on every reset; results carry the run they belong to
    run: int = 0

    @property
    def is_complete(self) -> bool:
        return self.status == BatchStatus.COMPLETE

    @property
    def processed_count(self) -> int:
        return self.current_index

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "total_count": self.total_count,
            "current_index": self.current_index,
            "status": self.status.value,
            "filename": self.filename,
            "created_at": self.created_at,
            "run": self.run,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Batch":
        return cls(
            id=data["id"],
            name=data.get("name", "Unknown"),
            total_count=data.get("total_count", 0),
            current_index=data.get("current_index", 0),
            status=BatchStatus(data.get("status", BatchStatus.PENDING.value)),
            filename=data.get("filename", ""),
            created_at=data.get("created_at", time.time()),
            run=data.get("run", 0),
        )


@dataclass
class OrchestrationState:
    """
    The single durable control record.

    Invariants:
        is_typing => typing_started_at is not None
        is_typing => is_processing
    """
    is_processing: bool = False
    is_typing: bool = False
    typing_started_at: Optional[float] = None
    prompt_sent: bool = False
    surface_handle: Optional[str] = None

    # Identity of the in-flight turn (None while handshaking)
    current_batch_id: Optional[str] = None
    current_task_index: Optional[int] = None

    # Consecutive forced unlocks of the same turn
    retry_key: Optional[str] = None
    retry_count: int = 0

    @property
    def phase(self) -> Phase:
        if not self.is_processing:
            return Phase.IDLE
        if self.is_typing:
            return Phase.AWAITING_TURN if self.prompt_sent else Phase.HANDSHAKING
        return Phase.DISPATCHING

    def lock_age(self, now: Optional[float] = None) -> Optional[float]:
        if not self.is_typing or self.typing_started_at is None:
            return None
        if now is None:
            now = time.time()
        return now - self.typing_started_at

    def holds(self, batch_id: str, task_index: int) -> bool:
        """Whether the lock is held for exactly this task."""
        return (
            self.is_typing
            and self.current_batch_id == batch_id
            and self.current_task_index == task_index
        )

    def to_dict(self) -> dict:
        return {
            "is_processing": self.is_processing,
            "is_typing": self.is_typing,
            "typing_started_at": self.typing_started_at,
            "prompt_sent": self.prompt_sent,
            "surface_handle": self.surface_handle,
            "current_batch_id": self.current_batch_id,
            "current_task_index": self.current_task_index,
            "retry_key": self.retry_key,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestrationState":
        return cls(
            is_processing=data.get("is_processing", False),
            is_typing=data.get("is_typing", False),
            typing_started_at=data.get("typing_started_at"),
            prompt_sent=data.get("prompt_sent", False),
            surface_handle=data.get("surface_handle"),
            current_batch_id=data.get("current_batch_id"),
            current_task_index=data.get("current_task_index"),
            retry_key=data.get("retry_key"),
            retry_count=data.get("retry_count", 0),
        )


@dataclass
class ResultRecord:
    """One append-only output row per completed Task."""
    batch_id: str
    task_index: Optional[int]
    timestamp: str
    title: str = ""
    job_url: str = ""
    job_id: str = ""
    parent_id: str = ""
    person_name: str = ""
    company_name: str = ""
    client_website: str = ""
    confidence: float = 0
    reasoning: str = ""
    run: int = 0
    id: Optional[int] = None

    @classmethod
    def from_turn(
        cls,
        result: Optional[dict],
        original_payload: Optional[dict],
        batch_id: str,
        task_index: Optional[int] = None,
        run: int = 0,
    ) -> "ResultRecord":
        """
        Build a row from whatever the worker reported.

        A missing or malformed result degrades to placeholder fields;
        the row is still produced.
        """
        if not isinstance(result, dict) or not result:
            result = {
                "personName": [],
                "companyName": "",
                "clientWebsite": "",
                "confidence": 0,
                "reasoning": "Empty response",
            }
        payload = original_payload if isinstance(original_payload, dict) else {}

        names = result.get("personName") or []
        if isinstance(names, str):
            names = [names]
        person_name = "; ".join(str(n) for n in names)

        try:
            confidence = float(result.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0

        return cls(
            batch_id=batch_id,
            task_index=task_index,
            timestamp=datetime.now(timezone.utc).isoformat(),
            title=str(payload.get("title") or payload.get("jobTitle") or ""),
            job_url=str(payload.get("job_url") or ""),
            job_id=str(payload.get("job_id") or ""),
            parent_id=str(payload.get("parent_id") or ""),
            person_name=person_name,
            company_name=str(result.get("companyName") or ""),
            client_website=str(result.get("clientWebsite") or ""),
            confidence=confidence,
            reasoning=str(result.get("reasoning") or ""),
            run=run,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "task_index": self.task_index,
            "timestamp": self.timestamp,
            "title": self.title,
            "job_url": self.job_url,
            "job_id": self.job_id,
            "parent_id": self.parent_id,
            "person_name": self.person_name,
            "company_name": self.company_name,
            "client_website": self.client_website,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "run": self.run,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResultRecord":
        return cls(
            id=data.get("id"),
            batch_id=data["batch_id"],
            task_index=data.get("task_index"),
            timestamp=data.get("timestamp", ""),
            title=data.get("title", ""),
            job_url=data.get("job_url", ""),
            job_id=data.get("job_id", ""),
            parent_id=data.get("parent_id", ""),
            person_name=data.get("person_name", ""),
            company_name=data.get("company_name", ""),
            client_website=data.get("client_website", ""),
            confidence=data.get("confidence", 0),
            reasoning=data.get("reasoning", ""),
            run=data.get("run", 0),
        )
