"""Shared fixtures for taskrelay tests."""

import os
import threading
from collections import defaultdict
from unittest.mock import MagicMock

import pytest
import yaml

from taskrelay.engine.delegation import DelegationExecutor
from taskrelay.engine.facade import Orchestrator
from taskrelay.engine.results import ResultStore
from taskrelay.engine.roles import DEFAULT_ROLES
from taskrelay.engine.scheduler import Scheduler
from taskrelay.engine.store import TaskStore
from taskrelay.engine.tasks import WorkerReport
from taskrelay.engine.worker import LocalWorkerDispatcher, WorkerRunner
from taskrelay.llm import LLMResponse

WAIT = 5.0


class FakeLLM:
    """Stands in for LLMAdapter. ``responses`` maps a substring of the user
    prompt to reply text or to an exception to raise."""

    def __init__(self, content="# Result\n\nDone.", model="fake/model"):
        self.model = model
        self.content = content
        self.responses = {}
        self.calls = []
        self.gate = None
        self._lock = threading.Lock()

    def chat(self, messages, max_tokens=None):
        with self._lock:
            self.calls.append({"messages": messages, "max_tokens": max_tokens})
        if self.gate is not None:
            self.gate.wait(WAIT)
        user = messages[-1]["content"]
        content = self.content
        for key, value in self.responses.items():
            if key in user:
                if isinstance(value, Exception):
                    raise value
                content = value
                break
        return LLMResponse(
            content=content,
            usage={"input_tokens": 10, "output_tokens": 20, "total_tokens": 30},
            model=self.model,
            stop_reason="stop",
        )


def _artifact_in_scope(invocation):
    """A file name inside the first allowed glob of the invocation's role."""
    if not invocation.allowed_paths:
        return f"{invocation.task_id}.py"
    pattern = invocation.allowed_paths[0].replace("**/", "")
    return pattern.replace("*", f"{invocation.task_id}.py", 1)


class FakeRunner(WorkerRunner):
    """Scriptable local worker. Tasks with a gate block until it is set or
    the dispatch is cancelled."""

    def __init__(self):
        self.invocations = []
        self.reports = {}
        self.gates = {}
        self.started = defaultdict(threading.Event)
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def gate(self, task_id):
        event = threading.Event()
        self.gates[task_id] = event
        return event

    def run(self, invocation, cancel_event):
        with self._lock:
            self.invocations.append(invocation)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started[invocation.task_id].set()
        try:
            gate = self.gates.get(invocation.task_id)
            if gate is not None:
                while not gate.wait(0.01):
                    if cancel_event.is_set():
                        raise RuntimeError("cancelled")
            if invocation.task_id in self.reports:
                outcome = self.reports[invocation.task_id]
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            return WorkerReport(
                completed_items=[invocation.description],
                artifacts=[_artifact_in_scope(invocation)],
                notes="ok",
            )
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def isolated_user_config(tmp_path_factory, monkeypatch):
    """Keep ~/.taskrelay and TASKRELAY_* variables out of every test."""
    home = tmp_path_factory.mktemp("home") / ".taskrelay"
    monkeypatch.setattr("taskrelay.config.CONFIG_DIR", home)
    monkeypatch.setattr("taskrelay.config.CONFIG_FILE", home / "config.yml")
    for var in list(os.environ):
        if var.startswith("TASKRELAY_"):
            monkeypatch.delenv(var)
    return home


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_orchestrator(tmp_path, fake_llm, fake_runner):
    """Factory for an Orchestrator wired to the fakes; closed after the test."""
    created = []

    def _make(max_parallel=4, task_timeout=WAIT, store=None, persist_results=True):
        store = store if store is not None else TaskStore()
        results = ResultStore(tmp_path / "results") if persist_results else None
        scheduler = Scheduler(
            store=store,
            executor=DelegationExecutor(fake_llm),
            dispatcher=LocalWorkerDispatcher(fake_runner),
            roles=dict(DEFAULT_ROLES),
            results=results,
            max_parallel=max_parallel,
            task_timeout=task_timeout,
            poll_interval=0.02,
        )
        orch = Orchestrator(store=store, scheduler=scheduler, results=results)
        created.append(orch)
        return orch

    yield _make
    for gate in fake_runner.gates.values():
        gate.set()
    for orch in created:
        orch.close()


@pytest.fixture
def sample_config_data():
    """Minimal .taskrelay.yml data dict."""
    return {
        "active-model": "local",
        "max-parallel": 2,
        "task-timeout": 60,
        "poll-interval": 0.1,
        "results-dir": "out/results",
        "store-file": "out/tasks.json",
        "verbose": False,
        "worker": {"runner": "command", "command": ["python", "worker.py"]},
        "roles": {
            "infra": {
                "description": "Infrastructure",
                "allowed-paths": ["deploy/*"],
                "out-of-scope": ["application code"],
                "references": ["standards/infra.md"],
                "model-override": "local",
                "temperature-override": 0.3,
            },
        },
        "models": {
            "local": {
                "provider": "local",
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 4096,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            }
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".taskrelay.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def mock_console():
    """A mock Rich Console that silently accepts all print calls."""
    c = MagicMock()
    c.print = MagicMock()
    return c
