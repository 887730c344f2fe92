"""Task definitions, status state machine, and execution result types."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from ..errors import ValidationError


class TaskKind(Enum):
    RESEARCH = "research"
    DOCUMENTATION = "documentation"
    DESIGN = "design"
    ANALYSIS = "analysis"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"


class OutputFormat(Enum):
    MARKDOWN = "markdown"
    JSON = "json"
    TEXT = "text"


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# pending → failed covers unroutable and blocked tasks that never start.
ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.FAILED}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
}

DELEGABLE_KINDS: FrozenSet[TaskKind] = frozenset({
    TaskKind.RESEARCH,
    TaskKind.DOCUMENTATION,
    TaskKind.DESIGN,
    TaskKind.ANALYSIS,
    TaskKind.PLANNING,
})
LOCAL_KINDS: FrozenSet[TaskKind] = frozenset({TaskKind.IMPLEMENTATION, TaskKind.VERIFICATION})

_EXTENSIONS = {
    OutputFormat.MARKDOWN: "md",
    OutputFormat.JSON: "json",
    OutputFormat.TEXT: "txt",
}

_OPTIONAL_TEXT_FIELDS = ("context", "role", "output_filename")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls, value, field_name: str, task_id: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Task '{task_id}': invalid {field_name} '{value}' (expected one of: {allowed})"
        ) from None


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Task:
    """A single unit of work tracked by the engine."""

    id: str
    kind: TaskKind
    description: str
    context: Optional[str] = None
    output_format: OutputFormat = OutputFormat.MARKDOWN
    role: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    feature: str = "default"
    output_filename: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    content: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None   # execution | timeout | unroutable | blocked
    result_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None

    @property
    def is_delegable(self) -> bool:
        return self.kind in DELEGABLE_KINDS

    @property
    def result_filename(self) -> str:
        if self.output_filename:
            return self.output_filename
        return f"{self.id}.{_EXTENSIONS[self.output_format]}"

    def validate(self) -> None:
        """Check task shape; raises ValidationError."""
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("Task id must be a non-empty string")
        if not isinstance(self.description, str) or not self.description.strip():
            raise ValidationError(f"Task '{self.id}': description is required")
        if not isinstance(self.feature, str) or not self.feature.strip():
            raise ValidationError(f"Task '{self.id}': feature must be a non-empty string")
        for name in _OPTIONAL_TEXT_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(
                    f"Task '{self.id}': {name} must be a string, got {type(value).__name__}"
                )
        if self.id in self.depends_on:
            raise ValidationError(f"Task '{self.id}' depends on itself")
        if self.content is not None and self.error is not None:
            raise ValidationError(f"Task '{self.id}': content and error are mutually exclusive")
        if self.output_filename and ("/" in self.output_filename or "\\" in self.output_filename
                                     or self.output_filename in (".", "..")):
            raise ValidationError(f"Task '{self.id}': output_filename must be a bare file name")

    # ── Serialization ─────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build a task from caller-supplied or persisted data."""
        if not isinstance(data, dict):
            raise ValidationError(f"Task entry must be a mapping, got {type(data).__name__}")
        task_id = data.get("id", data.get("task_id"))
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValidationError("Task id must be a non-empty string")

        raw_kind = data.get("kind", data.get("task_type"))
        if raw_kind is None:
            raise ValidationError(f"Task '{task_id}': kind is required")

        depends_on = data.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, (list, tuple, set)):
            raise ValidationError(f"Task '{task_id}': depends_on must be a list of task ids")
        deps: List[str] = []
        for dep in depends_on:
            if not isinstance(dep, str) or not dep.strip():
                raise ValidationError(f"Task '{task_id}': depends_on entries must be task ids")
            if dep not in deps:
                deps.append(dep)

        task = cls(
            id=task_id,
            kind=_parse_enum(TaskKind, raw_kind, "kind", task_id),
            description=data.get("description") or "",
            context=data.get("context") or None,
            output_format=_parse_enum(
                OutputFormat, data.get("output_format") or "markdown", "output_format", task_id
            ),
            role=data.get("role") or None,
            depends_on=deps,
            feature=data.get("feature") or "default",
            output_filename=data.get("output_filename") or None,
        )
        if "status" in data:
            task.status = _parse_enum(TaskStatus, data["status"], "status", task_id)
            task.content = data.get("content")
            task.error = data.get("error")
            task.error_kind = data.get("error_kind")
            task.result_path = data.get("result_path")
            task.metadata = dict(data.get("metadata") or {})
            task.created_at = _parse_time(data.get("created_at")) or task.created_at
            task.updated_at = _parse_time(data.get("updated_at")) or task.updated_at
            task.cancelled_at = _parse_time(data.get("cancelled_at"))
        task.validate()
        return task

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "description": self.description,
            "context": self.context,
            "output_format": self.output_format.value,
            "role": self.role,
            "depends_on": list(self.depends_on),
            "feature": self.feature,
            "output_filename": self.output_filename,
            "status": self.status.value,
            "content": self.content,
            "error": self.error,
            "error_kind": self.error_kind,
            "result_path": self.result_path,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


@dataclass
class DelegationOutcome:
    """Result of one generation-service call. Exactly one of content/error is set."""

    task_id: str
    content: Optional[str] = None
    error: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.error is None

    def metadata(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"usage": dict(self.usage), "model": self.model}
        if self.stop_reason:
            meta["stop_reason"] = self.stop_reason
        key = "completed_at" if self.ok else "failed_at"
        meta[key] = self.finished_at.isoformat()
        return meta


@dataclass
class WorkerReport:
    """Structured completion report returned by a local worker."""

    completed_items: List[str] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Optional["WorkerReport"]:
        """Return a report, or None when ``data`` is not report-shaped."""
        if not isinstance(data, dict):
            return None
        if not any(k in data for k in ("completed_items", "artifacts", "notes")):
            return None
        items = data.get("completed_items") or []
        artifacts = data.get("artifacts") or []
        if not isinstance(items, list) or not isinstance(artifacts, list):
            return None
        return cls(
            completed_items=[str(i) for i in items],
            artifacts=[str(a) for a in artifacts],
            notes=str(data.get("notes") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed_items": list(self.completed_items),
            "artifacts": list(self.artifacts),
            "notes": self.notes,
        }
