"""
Durable storage for the control process.

Three stores, all rooted at the configured data directory:

1. DurableStore: one JSON document of named records (orchestration state,
   batch queue, timers). Every set() rewrites the whole document with an
   atomic .tmp -> fsync -> replace so a crash never leaves a torn file.
2. PayloadStore: one JSON file per batch holding its task payloads.
3. ResultSink: append-only JSON Lines file of completed task results.

Durability is the point: anything that returns has reached the disk.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Optional

from shared.errors import StoreIOError
from shared.logging import get_logger

from .models import Batch, BatchStatus, ResultRecord

log = get_logger("orchestrator", "store")


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically: .tmp -> fsync -> replace."""
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise StoreIOError(f"Failed to write {path}: {e}") from e


class DurableStore:
    """
    Key-value store of named records backed by a single JSON file.

    set() shallow-merges the given fields into the named record and
    persists the whole document before returning.
    """

    def __init__(self, path: Path, defaults: Optional[dict] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.defaults = defaults or {}

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to read {self.path}: {e}") from e

    def get(self, key: str) -> Any:
        """Return the named record, falling back to its default."""
        data = self._read()
        if key in data:
            return data[key]
        return copy.deepcopy(self.defaults.get(key))

    def get_many(self, *keys: str) -> dict:
        data = self._read()
        return {
            key: data[key] if key in data else copy.deepcopy(self.defaults.get(key))
            for key in keys
        }

    def set(self, key: str, fields: Any) -> Any:
        """
        Merge fields into the named record and persist.

        Dict values are shallow-merged into an existing dict record; any
        other value replaces the record outright.
        """
        data = self._read()
        current = data.get(key, copy.deepcopy(self.defaults.get(key)))
        if isinstance(fields, dict) and isinstance(current, dict):
            current = {**current, **fields}
        else:
            current = fields
        data[key] = current
        _atomic_write_json(self.path, data)
        return current

    def replace(self, key: str, value: Any) -> None:
        """Overwrite the named record without merging."""
        data = self._read()
        data[key] = value
        _atomic_write_json(self.path, data)

    def clear(self, key: str) -> Any:
        """Drop the named record and return its default."""
        data = self._read()
        if key in data:
            del data[key]
            _atomic_write_json(self.path, data)
        return copy.deepcopy(self.defaults.get(key))


class BatchQueue:
    """
    Ordered list of Batches persisted as one record in the DurableStore.

    Insertion order is processing order.
    """

    KEY = "batch_queue"

    def __init__(self, store: DurableStore):
        self.store = store

    def batches(self) -> list[Batch]:
        return [Batch.from_dict(b) for b in (self.store.get(self.KEY) or [])]

    def _save(self, batches: list[Batch]) -> None:
        self.store.replace(self.KEY, [b.to_dict() for b in batches])

    def get(self, batch_id: str) -> Optional[Batch]:
        for batch in self.batches():
            if batch.id == batch_id:
                return batch
        return None

    def add(self, batch: Batch) -> Batch:
        batches = self.batches()
        batches.append(batch)
        self._save(batches)
        log.info("orchestrator.store.batch_added",
                 batch_id=batch.id, name=batch.name, total=batch.total_count)
        return batch

    def update(self, batch_id: str, **fields: Any) -> Optional[Batch]:
        batches = self.batches()
        updated = None
        for batch in batches:
            if batch.id == batch_id:
                for key, value in fields.items():
                    setattr(batch, key, value)
                updated = batch
                break
        if updated is not None:
            self._save(batches)
        return updated

    def first_incomplete(self) -> Optional[Batch]:
        for batch in self.batches():
            if not batch.is_complete:
                return batch
        return None

    def mark_processing(self, batch_id: str) -> Optional[Batch]:
        return self.update(batch_id, status=BatchStatus.PROCESSING)

    def mark_complete(self, batch_id: str) -> Optional[Batch]:
        return self.update(batch_id, status=BatchStatus.COMPLETE)

    def advance_cursor(self, batch_id: str) -> Optional[Batch]:
        """Move the cursor one task forward, completing the batch at the end."""
        batch = self.get(batch_id)
        if batch is None:
            return None
        new_index = batch.current_index + 1
        status = BatchStatus.COMPLETE if new_index >= batch.total_count else batch.status
        return self.update(batch_id, current_index=new_index, status=status)

    def reset(self, batch_id: str) -> Optional[Batch]:
        batch = self.get(batch_id)
        if batch is None:
            return None
        return self.update(batch_id, current_index=0, status=BatchStatus.PENDING, run=batch.run + 1)

    def reset_all(self) -> int:
        batches = self.batches()
        for batch in batches:
            batch.current_index = 0
            batch.status = BatchStatus.PENDING
            batch.run += 1
        self._save(batches)
        return len(batches)

    def delete(self, batch_id: str) -> bool:
        batches = self.batches()
        remaining = [b for b in batches if b.id != batch_id]
        if len(remaining) == len(batches):
            return False
        self._save(remaining)
        return True

    def clear_completed(self) -> list[str]:
        """Remove completed batches, returning their ids."""
        batches = self.batches()
        removed = [b.id for b in batches if b.is_complete]
        self._save([b for b in batches if not b.is_complete])
        return removed

    def clear(self) -> None:
        self._save([])


class PayloadStore:
    """One JSON file per batch: the ordered list of task payloads."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, batch_id: str) -> Path:
        return self.directory / f"{batch_id}.json"

    def save(self, batch_id: str, payloads: list) -> None:
        _atomic_write_json(self._path(batch_id), payloads)

    def load(self, batch_id: str) -> Optional[list]:
        """Return the payload list, or None if the batch has no payloads."""
        path = self._path(batch_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to read payloads for {batch_id}: {e}") from e

    def delete(self, batch_id: str) -> None:
        path = self._path(batch_id)
        if path.exists():
            path.unlink()

    def clear(self) -> None:
        for path in self.directory.glob("*.json"):
            path.unlink()


class ResultSink:
    """
    Append-only JSON Lines file of ResultRecords.

    Each record is assigned a monotonically increasing id on append.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def all(self) -> list[ResultRecord]:
        if not self.path.exists():
            return []
        records = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    records.append(ResultRecord.from_dict(json.loads(line)))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to read results: {e}") from e
        return records

    def append(self, record: ResultRecord) -> int:
        """Persist one record and return its id."""
        existing = self.all()
        record.id = (max((r.id or 0) for r in existing) + 1) if existing else 1
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreIOError(f"Failed to append result: {e}") from e
        log.debug("orchestrator.store.result_appended",
                  result_id=record.id, batch_id=record.batch_id, task_index=record.task_index)
        return record.id

    def for_batch(self, batch_id: str) -> list[ResultRecord]:
        return [r for r in self.all() if r.batch_id == batch_id]

    def has(self, batch_id: str, task_index: int, run: int = 0) -> bool:
        """Whether this task already has a result from the given run of its batch."""
        return any(
            r.batch_id == batch_id and r.task_index == task_index and r.run == run
            for r in self.all()
        )

    def count(self) -> int:
        return len(self.all())

    def clear(self) -> None:
        if self.path.exists():
            _atomic_write_json_lines(self.path, [])


def _atomic_write_json_lines(path: Path, records: list[dict]) -> None:
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        raise StoreIOError(f"Failed to rewrite {path}: {e}") from e
