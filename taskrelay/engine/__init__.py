"""Task orchestration engine: store, executors, scheduler, and facade."""

from .tasks import (
    DelegationOutcome,
    OutputFormat,
    Task,
    TaskKind,
    TaskStatus,
    WorkerReport,
)
from .store import TaskStore
from .results import ResultStore
from .delegation import DelegationExecutor
from .roles import RoleScope, RoleSpec, load_roles_from_config, resolve_role
from .worker import (
    CommandWorkerRunner,
    LLMWorkerRunner,
    LocalWorkerDispatcher,
    WorkerInvocation,
    WorkerOutcome,
    WorkerRunner,
)
from .graph import load_graph_file, validate_graph
from .annotations import parse_annotated_tasks
from .events import EventBus, EventType, TaskEvent
from .scheduler import Scheduler
from .facade import Orchestrator

__all__ = [
    "DelegationOutcome",
    "OutputFormat",
    "Task",
    "TaskKind",
    "TaskStatus",
    "WorkerReport",
    "TaskStore",
    "ResultStore",
    "DelegationExecutor",
    "RoleScope",
    "RoleSpec",
    "load_roles_from_config",
    "resolve_role",
    "CommandWorkerRunner",
    "LLMWorkerRunner",
    "LocalWorkerDispatcher",
    "WorkerInvocation",
    "WorkerOutcome",
    "WorkerRunner",
    "load_graph_file",
    "validate_graph",
    "parse_annotated_tasks",
    "EventBus",
    "EventType",
    "TaskEvent",
    "Scheduler",
    "Orchestrator",
]
