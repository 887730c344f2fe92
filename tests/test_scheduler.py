"""Tests for the dependency scheduler: ordering, parallelism, failures, timeouts."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from taskrelay.engine.scheduler import ROUTE_DELEGATED, ROUTE_LOCAL
from taskrelay.engine.tasks import Task, TaskStatus, WorkerReport
from taskrelay.errors import UnroutableTaskError

from conftest import WAIT


def _research(id, depends_on=None, **kw):
    return {"id": id, "kind": "research", "description": f"Research {id}",
            "depends_on": depends_on or [], **kw}


def _impl(id, role="api", depends_on=None, **kw):
    return {"id": id, "kind": "implementation", "role": role,
            "description": f"Implement {id}", "depends_on": depends_on or [], **kw}


def _wait_for(predicate, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRouting:
    """Kind/role → executor or dispatcher."""

    def test_delegable_kinds_route_to_executor(self, make_orchestrator):
        scheduler = make_orchestrator().scheduler
        for kind in ("research", "documentation", "design", "analysis", "planning"):
            task = Task.from_dict({"id": "x", "kind": kind, "description": "d"})
            assert scheduler.route(task) == (ROUTE_DELEGATED, None)

    def test_local_kind_with_alias_role(self, make_orchestrator):
        scheduler = make_orchestrator().scheduler
        task = Task.from_dict({"id": "x", "kind": "verification", "role": "qa",
                               "description": "d"})
        route, role = scheduler.route(task)
        assert route == ROUTE_LOCAL
        assert role.name == "testing"

    def test_local_kind_without_role_is_unroutable(self, make_orchestrator):
        scheduler = make_orchestrator().scheduler
        task = Task.from_dict({"id": "x", "kind": "implementation", "description": "d"})
        with pytest.raises(UnroutableTaskError):
            scheduler.route(task)


class TestCompletion:
    """Successful runs through both routes."""

    def test_delegated_task_completes_with_metadata(self, make_orchestrator, fake_llm, tmp_path):
        orch = make_orchestrator()
        orch.submit([_research("r1")], feature="auth")
        assert orch.wait(WAIT)

        task = orch.get_result("r1")
        assert task.status == TaskStatus.COMPLETED
        assert task.content == fake_llm.content
        assert task.error is None
        assert task.metadata["usage"] == {"input_tokens": 10, "output_tokens": 20}
        assert task.metadata["model"] == "fake/model"
        assert "completed_at" in task.metadata
        saved = tmp_path / "results" / "auth" / "r1.md"
        assert task.result_path == str(saved)
        assert saved.read_text(encoding="utf-8") == fake_llm.content

    def test_local_task_completes_with_report(self, make_orchestrator, fake_runner):
        orch = make_orchestrator()
        orch.submit([_impl("i1", role="database")])
        assert orch.wait(WAIT)

        task = orch.get_result("i1")
        assert task.status == TaskStatus.COMPLETED
        assert json.loads(task.content) == task.metadata["report"]
        assert task.metadata["report"]["artifacts"] == ["migrations/i1.py"]
        assert task.result_path is None
        invocation = fake_runner.invocations[0]
        assert invocation.role == "database"
        assert "migrations/*" in invocation.allowed_paths

    def test_dependency_on_earlier_submission(self, make_orchestrator):
        orch = make_orchestrator()
        orch.submit([_research("r1")])
        assert orch.wait(WAIT)
        orch.submit([_impl("i1", depends_on=["r1"])])
        assert orch.wait(WAIT)
        assert orch.get_result("i1").status == TaskStatus.COMPLETED

    def test_events_emitted_in_order(self, make_orchestrator):
        orch = make_orchestrator()
        orch.submit([_research("r1")])
        assert orch.wait(WAIT)
        types = [e.type.value for e in orch.events.history("r1")]
        assert types == ["submitted", "started", "completed"]


class TestOrdering:
    """Dependencies gate dispatch; independent tasks run in parallel."""

    def test_dependent_waits_for_dependency(self, make_orchestrator, fake_runner):
        orch = make_orchestrator()
        gate = fake_runner.gate("a")
        orch.submit([_impl("a"), _impl("b", depends_on=["a"])])

        assert fake_runner.started["a"].wait(WAIT)
        time.sleep(0.1)
        assert orch.get_result("b").status == TaskStatus.PENDING
        assert not fake_runner.started["b"].is_set()

        gate.set()
        assert orch.wait(WAIT)
        assert [i.task_id for i in fake_runner.invocations] == ["a", "b"]
        a, b = orch.get_result("a"), orch.get_result("b")
        assert b.status == TaskStatus.COMPLETED
        assert a.updated_at <= b.updated_at

    def test_independent_tasks_run_concurrently(self, make_orchestrator, fake_runner):
        orch = make_orchestrator(max_parallel=4)
        gate_a = fake_runner.gate("a")
        gate_b = fake_runner.gate("b")
        orch.submit([_impl("a"), _impl("b", role="frontend")])

        assert fake_runner.started["a"].wait(WAIT)
        assert fake_runner.started["b"].wait(WAIT)
        assert _wait_for(lambda: len(orch.list_tasks("in_progress")) == 2)

        gate_a.set()
        gate_b.set()
        assert orch.wait(WAIT)
        assert fake_runner.max_active == 2

    def test_max_parallel_caps_dispatch(self, make_orchestrator, fake_runner):
        orch = make_orchestrator(max_parallel=1)
        gate_a = fake_runner.gate("a")
        orch.submit([_impl("a"), _impl("b")])

        assert fake_runner.started["a"].wait(WAIT)
        time.sleep(0.1)
        assert orch.get_result("b").status == TaskStatus.PENDING

        gate_a.set()
        assert orch.wait(WAIT)
        assert orch.get_result("b").status == TaskStatus.COMPLETED
        assert fake_runner.max_active == 1

    def test_diamond_graph(self, make_orchestrator, fake_runner):
        orch = make_orchestrator()
        orch.submit([
            _research("root"),
            _impl("left", depends_on=["root"]),
            _impl("right", role="frontend", depends_on=["root"]),
            _impl("join", role="testing", depends_on=["left", "right"]),
        ])
        assert orch.wait(WAIT)
        assert all(t.status == TaskStatus.COMPLETED for t in orch.list_tasks())
        order = [i.task_id for i in fake_runner.invocations]
        assert order[-1] == "join"

    def test_creation_order_breaks_ties(self, make_orchestrator, fake_runner):
        orch = make_orchestrator(max_parallel=1)
        orch.submit([_impl("zeta"), _impl("alpha"), _impl("mid", role="frontend")])
        assert orch.wait(WAIT)
        assert [i.task_id for i in fake_runner.invocations] == ["zeta", "alpha", "mid"]

    def test_newly_eligible_tasks_follow_creation_order(self, make_orchestrator, fake_runner):
        orch = make_orchestrator(max_parallel=1)
        orch.submit([
            _impl("root"),
            _impl("late", depends_on=["root"]),
            _impl("early", depends_on=["root"]),
        ])
        assert orch.wait(WAIT)
        assert [i.task_id for i in fake_runner.invocations] == ["root", "late", "early"]


class TestFailures:
    """Execution errors, unroutable tasks, and the failure cascade."""

    def test_worker_crash_cascades(self, make_orchestrator, fake_runner):
        fake_runner.reports["a"] = RuntimeError("boom")
        orch = make_orchestrator()
        orch.submit([
            _impl("a"),
            _impl("b", depends_on=["a"]),
            _impl("c", depends_on=["b"]),
            _impl("d"),
        ])
        assert orch.wait(WAIT)

        a = orch.get_result("a")
        assert a.status == TaskStatus.FAILED
        assert a.error == "worker did not complete: boom"
        assert a.error_kind == "execution"
        assert a.content is None

        b = orch.get_result("b")
        assert b.status == TaskStatus.FAILED
        assert b.error == "blocked by failed dependency: a"
        assert b.error_kind == "blocked"
        assert orch.get_result("c").error == "blocked by failed dependency: b"
        assert orch.get_result("d").status == TaskStatus.COMPLETED
        assert [i.task_id for i in fake_runner.invocations if i.task_id in ("b", "c")] == []

    def test_missing_report(self, make_orchestrator, fake_runner):
        fake_runner.reports["a"] = None
        orch = make_orchestrator()
        orch.submit([_impl("a")])
        assert orch.wait(WAIT)
        task = orch.get_result("a")
        assert task.status == TaskStatus.FAILED
        assert task.error == "no report produced"

    def test_delegated_error_message_preserved(self, make_orchestrator, fake_llm):
        fake_llm.responses["Research r1"] = ConnectionError("LLM error: RateLimitError: slow down")
        orch = make_orchestrator()
        orch.submit([_research("r1")])
        assert orch.wait(WAIT)
        task = orch.get_result("r1")
        assert task.status == TaskStatus.FAILED
        assert task.error == "LLM error: RateLimitError: slow down"
        assert task.result_path is None
        assert "failed_at" in task.metadata

    def test_empty_generation_fails(self, make_orchestrator, fake_llm):
        fake_llm.responses["Research r1"] = ""
        orch = make_orchestrator()
        orch.submit([_research("r1")])
        assert orch.wait(WAIT)
        assert orch.get_result("r1").error == "Generation service returned no text content"

    def test_unroutable_fails_without_blocking_siblings(self, make_orchestrator, fake_runner):
        orch = make_orchestrator()
        orch.submit([
            _impl("x", role="astronaut"),
            {"id": "y", "kind": "verification", "description": "no role"},
            _impl("z"),
        ])
        assert orch.wait(WAIT)
        x = orch.get_result("x")
        assert x.status == TaskStatus.FAILED
        assert x.error_kind == "unroutable"
        assert "astronaut" in x.error
        assert orch.get_result("y").error_kind == "unroutable"
        assert orch.get_result("z").status == TaskStatus.COMPLETED
        assert [i.task_id for i in fake_runner.invocations] == ["z"]

    def test_dependency_on_earlier_failed_task(self, make_orchestrator, fake_runner):
        fake_runner.reports["a"] = RuntimeError("boom")
        orch = make_orchestrator()
        orch.submit([_impl("a")])
        assert orch.wait(WAIT)
        orch.submit([_impl("b", depends_on=["a"])])
        assert orch.wait(WAIT)
        assert orch.get_result("b").error == "blocked by failed dependency: a"


class TestTimeouts:
    """Wall-clock limit per dispatch."""

    def test_timeout_fails_task_and_discards_late_result(self, make_orchestrator, fake_runner):
        gate = fake_runner.gate("slow")
        orch = make_orchestrator(task_timeout=0.2)
        orch.submit([_impl("slow"), _impl("after", depends_on=["slow"])])
        assert orch.wait(WAIT)

        slow = orch.get_result("slow")
        assert slow.status == TaskStatus.FAILED
        assert slow.error == "Timed out after 0.2s"
        assert slow.error_kind == "timeout"
        assert slow.metadata["timeout_seconds"] == 0.2
        assert orch.get_result("after").error == "blocked by failed dependency: slow"

        gate.set()
        time.sleep(0.1)
        assert orch.get_result("slow").status == TaskStatus.FAILED
        assert orch.get_result("slow").content is None


class TestCancellation:
    """cancel() interplay with in-flight and pending tasks."""

    def test_cancel_in_progress_discards_result(self, make_orchestrator, fake_runner):
        gate = fake_runner.gate("a")
        orch = make_orchestrator()
        orch.submit([_impl("a"), _impl("b", depends_on=["a"])])
        assert fake_runner.started["a"].wait(WAIT)
        assert _wait_for(lambda: orch.get_result("a").status == TaskStatus.IN_PROGRESS)

        orch.cancel("a")
        gate.set()
        assert orch.wait(WAIT)

        a = orch.get_result("a")
        assert a.status == TaskStatus.CANCELLED
        assert a.content is None
        assert a.cancelled_at is not None
        b = orch.get_result("b")
        assert b.status == TaskStatus.FAILED
        assert b.error == "blocked by cancelled dependency: a"

    def test_cancel_pending_task(self, make_orchestrator, fake_runner):
        gate = fake_runner.gate("a")
        orch = make_orchestrator()
        orch.submit([_impl("a"), _impl("b", depends_on=["a"])])
        assert fake_runner.started["a"].wait(WAIT)

        orch.cancel("b")
        gate.set()
        assert orch.wait(WAIT)
        assert orch.get_result("a").status == TaskStatus.COMPLETED
        assert orch.get_result("b").status == TaskStatus.CANCELLED
        assert [i.task_id for i in fake_runner.invocations] == ["a"]


class TestSaturatedPool:
    """Abandoned dispatches keep their slot until the unit returns."""

    def test_hung_delegation_does_not_time_out_queued_task(
        self, make_orchestrator, fake_llm, fake_runner,
    ):
        fake_llm.gate = threading.Event()
        orch = make_orchestrator(max_parallel=1, task_timeout=0.3)
        orch.submit([_research("a"), _impl("b", role="db")])

        assert _wait_for(lambda: orch.get_result("a").status == TaskStatus.FAILED)
        assert orch.get_result("a").error_kind == "timeout"
        time.sleep(0.1)
        assert orch.get_result("b").status == TaskStatus.PENDING
        assert fake_runner.invocations == []

        fake_llm.gate.set()
        assert orch.wait(WAIT)
        b = orch.get_result("b")
        assert b.status == TaskStatus.COMPLETED
        assert [i.task_id for i in fake_runner.invocations] == ["b"]
        a = orch.get_result("a")
        assert a.status == TaskStatus.FAILED
        assert a.content is None

    def test_cancelled_delegation_frees_slot_when_call_returns(
        self, make_orchestrator, fake_llm, fake_runner,
    ):
        fake_llm.gate = threading.Event()
        orch = make_orchestrator(max_parallel=1)
        orch.submit([_research("a"), _impl("b")])
        assert _wait_for(lambda: len(fake_llm.calls) == 1)

        orch.cancel("a")
        time.sleep(0.1)
        assert orch.get_result("b").status == TaskStatus.PENDING

        fake_llm.gate.set()
        assert orch.wait(WAIT)
        assert orch.get_result("a").status == TaskStatus.CANCELLED
        assert orch.get_result("b").status == TaskStatus.COMPLETED


class TestLoopResilience:
    """Unexpected per-task errors fail only that task."""

    def test_routing_crash_fails_one_task(self, make_orchestrator, fake_runner, monkeypatch):
        orch = make_orchestrator()
        scheduler = orch.scheduler
        original = scheduler.route

        def route(task):
            if task.id == "x":
                raise KeyError("x")
            return original(task)

        monkeypatch.setattr(scheduler, "route", route)
        orch.submit([_impl("x"), _impl("y", depends_on=["x"]), _impl("z")])
        assert orch.wait(WAIT)

        x = orch.get_result("x")
        assert x.status == TaskStatus.FAILED
        assert x.error_kind == "execution"
        assert x.error == "unexpected KeyError: 'x'"
        assert orch.get_result("y").error == "blocked by failed dependency: x"
        assert orch.get_result("z").status == TaskStatus.COMPLETED

    def test_result_recording_crash_fails_one_task(self, make_orchestrator, monkeypatch):
        orch = make_orchestrator()
        monkeypatch.setattr(orch.scheduler.results, "write",
                            MagicMock(side_effect=ValueError("bad feature")))
        orch.submit([_research("r1"), _impl("i1")])
        assert orch.wait(WAIT)

        r1 = orch.get_result("r1")
        assert r1.status == TaskStatus.FAILED
        assert r1.error == "unexpected ValueError: bad feature"
        assert orch.get_result("i1").status == TaskStatus.COMPLETED
        assert orch.list_tasks("in_progress") == []
        assert orch.list_tasks("pending") == []

    def test_out_of_scope_artifacts_fail_task(self, make_orchestrator, fake_runner):
        fake_runner.reports["a"] = WorkerReport(
            completed_items=["endpoint"], artifacts=["api/login.py", "migrations/002.sql"],
        )
        orch = make_orchestrator()
        orch.submit([_impl("a"), _impl("b", depends_on=["a"])])
        assert orch.wait(WAIT)

        a = orch.get_result("a")
        assert a.status == TaskStatus.FAILED
        assert a.error == "artifacts outside scope of role 'api': migrations/002.sql"
        assert a.error_kind == "execution"
        assert orch.get_result("b").error == "blocked by failed dependency: a"
