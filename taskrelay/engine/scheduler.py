"""Scheduler: dependency-ordered dispatch loop driving tasks to a terminal state."""

import json
import queue
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import (
    BlockedByDependencyError,
    InvalidTransitionError,
    TaskTimeoutError,
    UnroutableTaskError,
)
from ..logger import get_logger
from .delegation import DelegationExecutor
from .events import EventBus, EventType, TaskEvent
from .results import ResultStore
from .roles import RoleSpec, resolve_role
from .store import TaskStore
from .tasks import DELEGABLE_KINDS, LOCAL_KINDS, DelegationOutcome, Task, TaskStatus
from .worker import WORKER_DID_NOT_COMPLETE, LocalWorkerDispatcher, WorkerOutcome

_log = get_logger(__name__)

ROUTE_DELEGATED = "delegated"
ROUTE_LOCAL = "local"

_DEFAULT_TASK_TIMEOUT = 300.0
_DEFAULT_POLL_INTERVAL = 0.5


def _unexpected(exc: Exception) -> str:
    return f"unexpected {type(exc).__name__}: {exc}"


@dataclass
class _Inflight:
    task_id: str
    route: str
    cancel_event: threading.Event
    future: Optional[Future] = None
    # Set on the pool thread when the unit actually begins running.
    started: Optional[float] = None
    deadline: Optional[float] = None


@dataclass
class _Message:
    kind: str                 # track | completion | cancel | stop
    task_id: str = ""
    task_ids: List[str] = field(default_factory=list)
    future: Optional[Future] = None


class Scheduler:
    """Single coordinating loop over the task store.

    All scheduling decisions and status transitions happen on one thread;
    dispatched units run on a thread pool and report back through an inbox
    queue. The loop only blocks while at least one dispatch is in flight.

    A unit abandoned by timeout or cancellation keeps its pool slot until it
    actually returns, so later tasks never wait behind it in the pool queue.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: DelegationExecutor,
        dispatcher: LocalWorkerDispatcher,
        roles: Dict[str, RoleSpec],
        results: Optional[ResultStore] = None,
        events: Optional[EventBus] = None,
        max_parallel: int = 4,
        task_timeout: float = _DEFAULT_TASK_TIMEOUT,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
    ):
        self.store = store
        self.executor = executor
        self.dispatcher = dispatcher
        self.roles = roles
        self.results = results
        self.events = events or EventBus()
        self.max_parallel = max(1, max_parallel)
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_parallel, thread_name_prefix="taskrelay-dispatch",
        )
        self._inbox: "queue.Queue[_Message]" = queue.Queue()
        self._tracked: Set[str] = set()
        self._inflight: Dict[str, _Inflight] = {}
        self._draining: Set[Future] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()
        self._closed = False

    # ── Public API ────────────────────────────────────────────

    def schedule(self, task_ids: Iterable[str]) -> None:
        """Start driving the given (already stored) tasks; returns immediately."""
        self._post(_Message(kind="track", task_ids=list(task_ids)))

    def notify_cancelled(self, task_id: str) -> None:
        """Tell the loop a task was cancelled in the store."""
        self._post(_Message(kind="cancel", task_id=task_id))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every tracked task is terminal. False on timeout."""
        return self._idle.wait(timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
            if thread is not None:
                self._inbox.put(_Message(kind="stop"))
        if thread is not None and wait:
            thread.join(timeout=10.0)
            if thread.is_alive():
                _log.warning("Scheduler thread did not stop within timeout")
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _post(self, msg: _Message) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            self._inbox.put(msg)
            self._idle.clear()
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run, name="taskrelay-scheduler", daemon=True,
                )
                self._thread.start()

    # ── Event loop ────────────────────────────────────────────

    def _run(self) -> None:
        try:
            while True:
                if self._drain_inbox():
                    self._stop_inflight()
                    return
                self._fail_blocked()
                self._dispatch_eligible()
                if not self._inflight and not self._draining:
                    self._fail_blocked()
                    self._fail_stranded()

                if not self._inflight and not self._has_unresolved():
                    with self._lock:
                        if self._inbox.empty():
                            self._thread = None
                            self._idle.set()
                            return
                    continue

                try:
                    msg = self._inbox.get(timeout=self._next_wait())
                except queue.Empty:
                    msg = None
                if msg is not None and self._handle(msg):
                    self._stop_inflight()
                    return
                self._check_timeouts()
        except Exception:
            _log.exception("Scheduler loop crashed")
            raise
        finally:
            with self._lock:
                if self._thread is threading.current_thread():
                    self._thread = None
                    self._idle.set()

    def _drain_inbox(self) -> bool:
        """Handle queued messages without blocking. True if asked to stop."""
        while True:
            try:
                msg = self._inbox.get_nowait()
            except queue.Empty:
                return False
            if self._handle(msg):
                return True

    def _handle(self, msg: _Message) -> bool:
        if msg.kind == "stop":
            return True
        if msg.kind == "track":
            self._track(msg.task_ids)
        elif msg.kind == "completion":
            self._on_completion(msg.task_id, msg.future)
        elif msg.kind == "cancel":
            self._on_cancelled(msg.task_id)
        return False

    def _next_wait(self) -> float:
        deadlines = [inf.deadline for inf in self._inflight.values() if inf.deadline is not None]
        if not deadlines:
            return self.poll_interval
        nearest = min(deadlines)
        return max(0.0, min(self.poll_interval, nearest - time.monotonic()))

    def _has_unresolved(self) -> bool:
        """True while any tracked task is pending or in progress."""
        for task_id in self._tracked:
            status = self.store.status_of(task_id)
            if status is not None and not status.is_terminal:
                return True
        return False

    # ── Tracking ──────────────────────────────────────────────

    def _track(self, task_ids: List[str]) -> None:
        """Track tasks plus any unfinished ancestors they wait on."""
        stack = list(task_ids)
        while stack:
            task_id = stack.pop()
            if task_id in self._tracked or not self.store.contains(task_id):
                continue
            task = self.store.get(task_id)
            if task.status.is_terminal:
                continue
            self._tracked.add(task_id)
            stack.extend(task.depends_on)
            if task.status == TaskStatus.IN_PROGRESS and task_id not in self._inflight:
                # Left in progress by a coordinator that is gone; nothing will report back.
                self._fail(task_id, f"{WORKER_DID_NOT_COMPLETE}: dispatch lost", "execution")

    def _pending_tracked(self) -> List[Task]:
        """Tracked pending tasks in creation order."""
        return [t for t in self.store.list(TaskStatus.PENDING) if t.id in self._tracked]

    # ── Eligibility and dispatch ──────────────────────────────

    def _fail_blocked(self) -> None:
        """Fail pending tasks whose dependency ended failed or cancelled, transitively."""
        changed = True
        while changed:
            changed = False
            for task in self._pending_tracked():
                for dep in task.depends_on:
                    status = self.store.status_of(dep)
                    if status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                        err = BlockedByDependencyError(task.id, dep, status.value)
                        if self._fail(task.id, str(err), "blocked"):
                            changed = True
                        break

    def _fail_stranded(self) -> None:
        """With nothing in flight, no tracked task can make progress any more."""
        for task in self.store.list():
            if task.id in self._tracked and not task.status.is_terminal:
                self._fail(task.id, "blocked: dependencies can never complete", "blocked")

    def _is_eligible(self, task: Task) -> bool:
        return all(
            self.store.status_of(dep) == TaskStatus.COMPLETED for dep in task.depends_on
        )

    def route(self, task: Task) -> Tuple[str, Optional[RoleSpec]]:
        """Pick the executor or dispatcher for a task.

        Raises:
            UnroutableTaskError: the kind/role pair maps to no route.
        """
        if task.kind in DELEGABLE_KINDS:
            return ROUTE_DELEGATED, None
        if task.kind in LOCAL_KINDS:
            role = resolve_role(task.role, self.roles)
            if role is not None:
                return ROUTE_LOCAL, role
        raise UnroutableTaskError(task.id, task.kind.value, task.role)

    def _dispatch_eligible(self) -> None:
        """Start every eligible task, in creation order, up to max_parallel."""
        for task in self._pending_tracked():
            if len(self._inflight) + len(self._draining) >= self.max_parallel:
                return
            if not self._is_eligible(task):
                continue
            try:
                route, role = self.route(task)
            except UnroutableTaskError as e:
                self._fail(task.id, str(e), "unroutable")
                continue
            except Exception as e:
                _log.exception("Routing %s failed", task.id)
                self._fail(task.id, _unexpected(e), "execution")
                continue
            try:
                self._start(task, route, role)
            except Exception as e:
                _log.exception("Dispatch of %s failed", task.id)
                self._inflight.pop(task.id, None)
                self._fail(task.id, _unexpected(e), "execution")

    def _start(self, task: Task, route: str, role: Optional[RoleSpec]) -> None:
        try:
            started = self.store.update(task.id, status=TaskStatus.IN_PROGRESS)
        except InvalidTransitionError as e:
            _log.info("Skipping dispatch of %s: %s", task.id, e)
            return

        inflight = _Inflight(task_id=task.id, route=route, cancel_event=threading.Event())
        self._inflight[task.id] = inflight
        inflight.future = self._pool.submit(self._execute_unit, started, inflight, role)
        inflight.future.add_done_callback(
            lambda f, tid=task.id: self._inbox.put(_Message(kind="completion", task_id=tid, future=f))
        )
        detail = route if role is None else f"{route}:{role.name}"
        _log.info("Dispatched %s via %s", task.id, detail)
        self._emit(EventType.STARTED, task.id, detail)

    def _execute_unit(self, task: Task, inflight: _Inflight, role: Optional[RoleSpec]):
        """Runs on a pool thread. Both collaborators return failures as data."""
        started = time.monotonic()
        inflight.started = started
        inflight.deadline = started + self.task_timeout
        if inflight.route == ROUTE_DELEGATED:
            return self.executor.execute(task)
        return self.dispatcher.dispatch(task, role, inflight.cancel_event)

    # ── Completion handling ───────────────────────────────────

    def _on_completion(self, task_id: str, future: Future) -> None:
        if future in self._draining:
            self._draining.discard(future)
            _log.info("Discarding late result for %s", task_id)
            return
        inflight = self._inflight.get(task_id)
        if inflight is None or inflight.future is not future:
            _log.info("Discarding late result for %s", task_id)
            return
        del self._inflight[task_id]

        try:
            outcome = future.result()
        except CancelledError:
            return
        except Exception as e:
            _log.error("Dispatch of %s raised: %s", task_id, e)
            self._fail(task_id, str(e), "execution")
            return

        if self.store.status_of(task_id) != TaskStatus.IN_PROGRESS:
            _log.info("Discarding result for %s: task already terminal", task_id)
            return

        try:
            if isinstance(outcome, DelegationOutcome):
                self._apply_delegation(task_id, outcome)
            else:
                self._apply_worker(task_id, outcome)
        except Exception as e:
            _log.exception("Recording the result of %s failed", task_id)
            self._fail(task_id, _unexpected(e), "execution")

    def _apply_delegation(self, task_id: str, outcome: DelegationOutcome) -> None:
        if not outcome.ok:
            self._fail(task_id, outcome.error, "execution", outcome.metadata())
            return
        result_path = self._persist(task_id, outcome.content)
        self._complete(task_id, outcome.content, outcome.metadata(), result_path)

    def _apply_worker(self, task_id: str, outcome: WorkerOutcome) -> None:
        meta: Dict[str, Any] = {"elapsed_seconds": round(outcome.elapsed_seconds, 3)}
        if not outcome.ok:
            self._fail(task_id, outcome.error, "execution", meta)
            return
        meta["report"] = outcome.report.to_dict()
        content = json.dumps(outcome.report.to_dict(), indent=2, ensure_ascii=False)
        self._complete(task_id, content, meta, None)

    def _persist(self, task_id: str, content: str) -> Optional[str]:
        if self.results is None:
            return None
        task = self.store.get(task_id)
        try:
            path = self.results.write(task.feature, task.result_filename, content)
        except OSError as e:
            _log.warning("Could not store result for %s: %s", task_id, e)
            return None
        return str(path)

    def _complete(self, task_id: str, content: str, metadata: Dict[str, Any],
                  result_path: Optional[str]) -> None:
        try:
            self.store.update(
                task_id, status=TaskStatus.COMPLETED, content=content, error=None,
                error_kind=None, metadata=metadata, result_path=result_path,
            )
        except InvalidTransitionError as e:
            _log.info("Discarding result for %s: %s", task_id, e)
            return
        _log.info("Task %s completed", task_id)
        self._emit(EventType.COMPLETED, task_id, result_path or "", metadata)

    def _fail(self, task_id: str, error: str, error_kind: str,
              metadata: Optional[Dict[str, Any]] = None) -> bool:
        fields: Dict[str, Any] = {
            "status": TaskStatus.FAILED, "error": error or "unknown error",
            "error_kind": error_kind, "content": None,
        }
        if metadata is not None:
            fields["metadata"] = metadata
        try:
            self.store.update(task_id, **fields)
        except InvalidTransitionError as e:
            _log.info("Not failing %s: %s", task_id, e)
            return False
        _log.warning("Task %s failed (%s): %s", task_id, error_kind, fields["error"])
        self._emit(EventType.FAILED, task_id, fields["error"], {"error_kind": error_kind})
        return True

    # ── Timeouts and cancellation ─────────────────────────────

    def _check_timeouts(self) -> None:
        now = time.monotonic()
        for task_id, inflight in list(self._inflight.items()):
            if inflight.deadline is None or now < inflight.deadline:
                continue
            self._abandon(task_id)
            err = TaskTimeoutError(task_id, self.task_timeout)
            self._fail(task_id, str(err), "timeout",
                       {"timeout_seconds": self.task_timeout,
                        "elapsed_seconds": round(now - inflight.started, 3)})

    def _abandon(self, task_id: str) -> Optional[_Inflight]:
        """Stop tracking a dispatch; a unit still running keeps its slot until it returns."""
        inflight = self._inflight.pop(task_id, None)
        if inflight is None:
            return None
        inflight.cancel_event.set()
        if not inflight.future.cancel() and not inflight.future.done():
            self._draining.add(inflight.future)
        return inflight

    def _on_cancelled(self, task_id: str) -> None:
        if self._abandon(task_id) is not None:
            _log.info("Cancelled in-flight dispatch of %s", task_id)

    def _stop_inflight(self) -> None:
        for inflight in self._inflight.values():
            inflight.cancel_event.set()
            inflight.future.cancel()
        self._inflight.clear()
        self._draining.clear()

    def _emit(self, event_type: EventType, task_id: str, detail: str = "",
              metadata: Optional[Dict[str, Any]] = None) -> None:
        self.events.emit(TaskEvent(
            type=event_type, task_id=task_id, detail=detail,
            metadata=dict(metadata or {}),
        ))
