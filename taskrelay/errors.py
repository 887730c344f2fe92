"""Structured error types for the orchestration engine."""

from typing import Optional


class TaskRelayError(Exception):
    """Base error for all engine operations."""
    pass


class ValidationError(TaskRelayError):
    """Raised when a task or task graph is malformed. Nothing is mutated."""


class NotFoundError(TaskRelayError):
    """Raised when a task id is not present in the store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class InvalidTransitionError(TaskRelayError):
    """Raised on an illegal status change. Nothing is mutated."""

    def __init__(self, task_id: str, current: str, requested: str, reason: str = ""):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        message = f"Task '{task_id}' cannot move from {current} to {requested}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class UnroutableTaskError(TaskRelayError):
    """Raised when neither the executor nor the dispatcher accepts a task."""

    def __init__(self, task_id: str, kind: str, role: Optional[str]):
        self.task_id = task_id
        self.kind = kind
        self.role = role
        if role:
            detail = f"kind '{kind}' with role '{role}' has no route"
        else:
            detail = f"kind '{kind}' requires a known role"
        super().__init__(f"Task '{task_id}' is unroutable: {detail}")


class ExecutionError(TaskRelayError):
    """A delegated call or local worker failed. Message is preserved verbatim."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(message)


class TaskTimeoutError(TaskRelayError):
    """A dispatched unit exceeded its wall-clock limit."""

    def __init__(self, task_id: str, timeout: float):
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s")


class BlockedByDependencyError(TaskRelayError):
    """A pending task can never run because a dependency ended unsuccessfully."""

    def __init__(self, task_id: str, dependency_id: str, dependency_status: str = "failed"):
        self.task_id = task_id
        self.dependency_id = dependency_id
        self.dependency_status = dependency_status
        super().__init__(f"blocked by {dependency_status} dependency: {dependency_id}")
