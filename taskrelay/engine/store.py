"""TaskStore: thread-safe task record store enforcing the status state machine."""

import copy
import json
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from ..logger import get_logger
from .tasks import ALLOWED_TRANSITIONS, Task, TaskStatus, utcnow

_log = get_logger(__name__)

# Fields the engine may change after creation. Everything else is fixed at intake.
MUTABLE_FIELDS = frozenset({
    "status", "content", "error", "error_kind", "result_path", "metadata", "cancelled_at",
})

_SNAPSHOT_VERSION = 1

StatusFilter = Union[TaskStatus, str, None]


def _coerce_status(value: StatusFilter) -> Optional[TaskStatus]:
    if value is None or isinstance(value, TaskStatus):
        return value
    text = str(value).strip().lower()
    if text in ("", "all"):
        return None
    try:
        return TaskStatus(text)
    except ValueError:
        raise ValidationError(f"Unknown status filter '{value}'") from None


class TaskStore:
    """Mapping from task id to task record, with single-writer semantics.

    Every mutation goes through ``put``/``update`` under one lock, so callers
    only ever see whole records. Records handed out are copies.

    When ``path`` is given, a JSON snapshot is rewritten atomically after each
    mutation and reloaded on construction.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._path = Path(path) if path else None
        if self._path and self._path.exists():
            self._load()

    # ── Writes ────────────────────────────────────────────────

    def put(self, task: Task) -> Task:
        """Insert a task. Re-adding an existing id leaves the record untouched."""
        task.validate()
        with self._lock:
            existing = self._tasks.get(task.id)
            if existing is not None:
                _log.info("Task %s already stored; put ignored", task.id)
                return copy.deepcopy(existing)
            record = self._fresh_record(task)
            self._tasks[record.id] = record
            self._save()
            return copy.deepcopy(record)

    def put_many(self, tasks: Iterable[Task]) -> List[Task]:
        """Insert several tasks as one mutation; all are validated first."""
        tasks = list(tasks)
        for task in tasks:
            task.validate()
        with self._lock:
            stored = []
            for task in tasks:
                if task.id in self._tasks:
                    stored.append(copy.deepcopy(self._tasks[task.id]))
                    continue
                record = self._fresh_record(task)
                self._tasks[record.id] = record
                stored.append(copy.deepcopy(record))
            self._save()
            return stored

    def update(self, task_id: str, **fields) -> Task:
        """Apply a partial update atomically and return the new record.

        Raises:
            NotFoundError: unknown id.
            InvalidTransitionError: illegal status change (no mutation).
            ValidationError: unknown/immutable field or content+error together.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(task_id)
            if task.status.is_terminal:
                requested = _coerce_status(fields.get("status")) or task.status
                raise InvalidTransitionError(
                    task_id, task.status.value, requested.value, "task is terminal",
                )

            new_status = fields.get("status")
            if new_status is not None:
                new_status = _coerce_status(new_status)
                fields["status"] = new_status
                if new_status != task.status:
                    self._check_transition(task, new_status)
                    if new_status == TaskStatus.CANCELLED and "cancelled_at" not in fields:
                        fields["cancelled_at"] = utcnow()

            candidate = replace(task, **fields)
            if candidate.content is not None and candidate.error is not None:
                raise ValidationError(
                    f"Task '{task_id}': content and error are mutually exclusive"
                )
            now = utcnow()
            candidate.updated_at = now if now > task.updated_at else task.updated_at
            self._tasks[task_id] = candidate
            self._save()
            return copy.deepcopy(candidate)

    def _check_transition(self, task: Task, new_status: TaskStatus) -> None:
        """Validate a status change (caller must hold _lock)."""
        allowed = ALLOWED_TRANSITIONS.get(task.status, frozenset())
        if new_status not in allowed:
            reason = "task is terminal" if task.status.is_terminal else ""
            raise InvalidTransitionError(task.id, task.status.value, new_status.value, reason)
        if new_status == TaskStatus.IN_PROGRESS:
            for dep in task.depends_on:
                dep_task = self._tasks.get(dep)
                if dep_task is None or dep_task.status != TaskStatus.COMPLETED:
                    state = dep_task.status.value if dep_task else "missing"
                    raise InvalidTransitionError(
                        task.id, task.status.value, new_status.value,
                        f"dependency '{dep}' is {state}",
                    )

    def _fresh_record(self, task: Task) -> Task:
        now = utcnow()
        record = copy.deepcopy(task)
        record.status = TaskStatus.PENDING
        record.content = None
        record.error = None
        record.error_kind = None
        record.result_path = None
        record.cancelled_at = None
        record.created_at = now
        record.updated_at = now
        return record

    # ── Reads ─────────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(task_id)
            return copy.deepcopy(task)

    def contains(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.status if task else None

    def list(self, status: StatusFilter = None) -> List[Task]:
        """All tasks in creation order, optionally filtered by status."""
        wanted = _coerce_status(status)
        with self._lock:
            return [
                copy.deepcopy(t) for t in self._tasks.values()
                if wanted is None or t.status == wanted
            ]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in TaskStatus}
            for task in self._tasks.values():
                counts[task.status.value] += 1
            counts["total"] = len(self._tasks)
            return counts

    # ── Snapshot persistence ──────────────────────────────────

    def _save(self) -> None:
        """Atomically rewrite the snapshot file (caller must hold _lock)."""
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": _SNAPSHOT_VERSION,
            "tasks": [t.to_dict() for t in self._tasks.values()],
        }
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        os.replace(tmp, self._path)

    def _load(self) -> None:
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)
        entries = data.get("tasks", []) if isinstance(data, dict) else []
        for entry in entries:
            task = Task.from_dict(entry)
            self._tasks[task.id] = task
        _log.info("Loaded %d task(s) from %s", len(self._tasks), self._path)
