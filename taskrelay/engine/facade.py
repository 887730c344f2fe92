"""Orchestrator: the externally callable surface of the engine."""

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from ..config import Config
from ..errors import ValidationError
from ..llm import LLMAdapter
from ..logger import get_logger
from .delegation import DelegationExecutor
from .events import EventBus, EventType, TaskEvent
from .graph import validate_graph
from .results import ResultStore
from .roles import RoleSpec, load_roles_from_config
from .scheduler import Scheduler
from .store import StatusFilter, TaskStore
from .tasks import Task, TaskStatus
from .worker import (
    CommandWorkerRunner,
    LLMWorkerRunner,
    LocalWorkerDispatcher,
    WorkerInvocation,
    WorkerRunner,
)

_log = get_logger(__name__)

TaskInput = Union[Task, Dict[str, Any]]


def build_worker_runner(config: Config, roles: Dict[str, RoleSpec]) -> WorkerRunner:
    """Create the local worker transport named in config."""
    if config.worker_runner == "command":
        return CommandWorkerRunner(config.worker_command, cwd=config.project_root)

    def _llm_for(invocation: WorkerInvocation) -> LLMAdapter:
        role = roles.get(invocation.role)
        preset = config.get_active_preset()
        if role and role.model_override and role.model_override in config.models:
            preset = config.models[role.model_override]
        kwargs = preset.get_llm_kwargs()
        if role and role.temperature_override is not None:
            kwargs["temperature"] = role.temperature_override
        return LLMAdapter(**kwargs, timeout=config.task_timeout)

    return LLMWorkerRunner(_llm_for)


class Orchestrator:
    """Submit task graphs, inspect and cancel tasks.

    ``submit`` validates and admits a whole graph, then returns at once; the
    scheduler drives the tasks in the background. Poll ``get_result`` /
    ``list_tasks`` or block on ``wait``.
    """

    def __init__(
        self,
        store: TaskStore,
        scheduler: Scheduler,
        results: Optional[ResultStore] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.results = results
        self.events: EventBus = scheduler.events

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: Optional[TaskStore] = None,
        llm: Optional[LLMAdapter] = None,
        runner: Optional[WorkerRunner] = None,
        events: Optional[EventBus] = None,
    ) -> "Orchestrator":
        if store is None:
            store = TaskStore(config.resolve_path(config.store_file))
        if llm is None:
            llm = LLMAdapter(**config.get_active_preset().get_llm_kwargs(),
                             timeout=config.task_timeout)
        roles = load_roles_from_config(config)
        if runner is None:
            runner = build_worker_runner(config, roles)
        results = ResultStore(config.resolve_path(config.results_dir))
        scheduler = Scheduler(
            store=store,
            executor=DelegationExecutor(llm),
            dispatcher=LocalWorkerDispatcher(runner),
            roles=roles,
            results=results,
            events=events,
            max_parallel=config.max_parallel,
            task_timeout=config.task_timeout,
            poll_interval=config.poll_interval,
        )
        return cls(store=store, scheduler=scheduler, results=results)

    # ── Public API ────────────────────────────────────────────

    def submit(self, tasks: Iterable[TaskInput], feature: Optional[str] = None) -> List[str]:
        """Validate and admit a task graph; returns the ids in submission order.

        Raises:
            ValidationError: the graph is rejected as a whole; nothing is stored.
        """
        graph = [t if isinstance(t, Task) else Task.from_dict(t) for t in tasks]
        if feature:
            graph = [replace(t, feature=feature) for t in graph]

        already = [t.id for t in graph if self.store.contains(t.id)]
        if already:
            raise ValidationError(f"Task id(s) already submitted: {', '.join(already)}")
        validate_graph(graph, known_ids=[t.id for t in self.store.list()])

        stored = self.store.put_many(graph)
        task_ids = [t.id for t in stored]
        for task in stored:
            self.events.emit(TaskEvent(
                type=EventType.SUBMITTED, task_id=task.id, detail=task.kind.value,
            ))
        _log.info("Submitted %d task(s): %s", len(task_ids), ", ".join(task_ids))
        self.scheduler.schedule(task_ids)
        return task_ids

    def get_result(self, task_id: str) -> Task:
        """Current record for a task; content is read back from the result file if needed.

        Raises:
            NotFoundError: unknown id.
        """
        task = self.store.get(task_id)
        if (task.status == TaskStatus.COMPLETED and not task.content
                and self.results is not None):
            task.content = self.results.read(task.feature, task.result_filename)
        return task

    def list_tasks(self, status: StatusFilter = None) -> List[Task]:
        return self.store.list(status)

    def cancel(self, task_id: str) -> Task:
        """Cancel a pending or in-progress task.

        Raises:
            NotFoundError: unknown id.
            InvalidTransitionError: the task already completed or failed.
        """
        current = self.store.get(task_id)
        if current.status == TaskStatus.CANCELLED:
            return current
        task = self.store.update(task_id, status=TaskStatus.CANCELLED)
        self.events.emit(TaskEvent(type=EventType.CANCELLED, task_id=task_id))
        _log.info("Cancelled task %s", task_id)
        self.scheduler.notify_cancelled(task_id)
        return task

    def stats(self) -> Dict[str, int]:
        return self.store.stats()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait(timeout)

    def close(self) -> None:
        self.scheduler.shutdown()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
