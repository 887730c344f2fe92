"""Local worker dispatch: role-scoped invocations and the runners that execute them."""

import json
import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import ExecutionError
from ..llm import LLMAdapter
from ..logger import get_logger
from .roles import RoleSpec
from .tasks import Task, WorkerReport

_log = get_logger(__name__)

_JSON_BLOCK_RE = re.compile(r'```(?:\w*)\s*\n(.*?)```', re.DOTALL)

WORKER_DID_NOT_COMPLETE = "worker did not complete"
NO_REPORT_PRODUCED = "no report produced"
OUTSIDE_ROLE_SCOPE = "artifacts outside scope of role"

REPORT_INSTRUCTIONS = """\
When you finish, respond with ONLY a JSON object:
{"completed_items": ["..."], "artifacts": ["path/or/name", "..."], "notes": "..."}
- completed_items: sub-items of the task you finished
- artifacts: files or other artifacts you touched
- notes: anything the coordinator should know"""


@dataclass
class WorkerInvocation:
    """Everything a local worker is allowed to see for one task."""

    task_id: str
    role: str
    responsibility: str
    description: str
    allowed_paths: List[str] = field(default_factory=list)
    out_of_scope: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    instructions: str = ""

    def system_prompt(self) -> str:
        lines = [
            f"## Worker Role: {self.role}",
            f"Responsibility: {self.responsibility}",
        ]
        if self.allowed_paths:
            lines.append("\n## Allowed scope (you may only touch these):")
            lines.extend(f"- {p}" for p in self.allowed_paths)
        if self.out_of_scope:
            lines.append("\n## Out of scope (do not touch):")
            lines.extend(f"- {item}" for item in self.out_of_scope)
        if self.references:
            lines.append("\n## Supporting material:")
            lines.extend(f"- {ref}" for ref in self.references)
        if self.instructions:
            lines.append(f"\n{self.instructions}")
        lines.append(f"\n{REPORT_INSTRUCTIONS}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "role": self.role,
            "responsibility": self.responsibility,
            "description": self.description,
            "allowed_paths": list(self.allowed_paths),
            "out_of_scope": list(self.out_of_scope),
            "references": list(self.references),
            "instructions": self.instructions,
        }


@dataclass
class WorkerOutcome:
    """Result of one local dispatch. Exactly one of report/error is set."""

    task_id: str
    report: Optional[WorkerReport] = None
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_report(raw: str) -> Optional[WorkerReport]:
    """Extract a JSON report from worker output; None if there is none."""
    text = (raw or "").strip()
    if not text:
        return None

    m = _JSON_BLOCK_RE.search(text)
    if m:
        text = m.group(1).strip()

    if not text.startswith('{'):
        start = text.find('{')
        end = text.rfind('}')
        if start < 0 or end <= start:
            return None
        text = text[start:end + 1]

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        _log.warning("Failed to parse worker report: %s", text[:200])
        return None
    return WorkerReport.from_dict(data)


# ── Runners ───────────────────────────────────────────────────


class WorkerRunner(ABC):
    """Transport that executes one invocation in isolation."""

    @abstractmethod
    def run(self, invocation: WorkerInvocation,
            cancel_event: threading.Event) -> Optional[WorkerReport]:
        """Return a report, None if the worker finished without one, or raise on crash."""


class LLMWorkerRunner(WorkerRunner):
    """Runs each invocation as a fresh LLM conversation that sees only its role scope."""

    def __init__(self, llm_factory: Callable[[WorkerInvocation], LLMAdapter]):
        self._llm_factory = llm_factory

    def run(self, invocation: WorkerInvocation,
            cancel_event: threading.Event) -> Optional[WorkerReport]:
        llm = self._llm_factory(invocation)
        response = llm.chat(messages=[
            {"role": "system", "content": invocation.system_prompt()},
            {"role": "user", "content": f"## Task\n{invocation.description}"},
        ])
        if cancel_event.is_set():
            raise ExecutionError(invocation.task_id, "worker stopped after cancellation")
        return parse_report(response.content or "")


class CommandWorkerRunner(WorkerRunner):
    """Runs an external command; the invocation goes in on stdin as JSON and
    the report comes back on stdout."""

    def __init__(self, command: List[str], cwd: Optional[str] = None,
                 poll_interval: float = 0.2):
        if not command:
            raise ValueError("CommandWorkerRunner needs a command")
        self.command = list(command)
        self.cwd = cwd
        self.poll_interval = poll_interval

    def run(self, invocation: WorkerInvocation,
            cancel_event: threading.Event) -> Optional[WorkerReport]:
        proc = subprocess.Popen(
            self.command,
            cwd=self.cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        payload = json.dumps(invocation.to_dict())
        result: Dict[str, Any] = {}

        def _communicate():
            result["out"], result["err"] = proc.communicate(payload)

        reader = threading.Thread(target=_communicate, daemon=True,
                                  name=f"worker-io-{invocation.task_id}")
        reader.start()
        while reader.is_alive():
            if cancel_event.is_set():
                proc.kill()
                reader.join(timeout=5.0)
                raise ExecutionError(invocation.task_id, "worker process killed after cancellation")
            reader.join(timeout=self.poll_interval)

        if proc.returncode != 0:
            stderr = (result.get("err") or "").strip()
            raise ExecutionError(invocation.task_id, f"exit code {proc.returncode}: {stderr[:500]}")
        return parse_report(result.get("out") or "")


# ── Dispatcher ────────────────────────────────────────────────


class LocalWorkerDispatcher:
    """Builds role-scoped invocations and collects structured reports."""

    def __init__(self, runner: WorkerRunner):
        self.runner = runner

    def build_invocation(self, task: Task, role: RoleSpec) -> WorkerInvocation:
        return WorkerInvocation(
            task_id=task.id,
            role=role.name,
            responsibility=role.responsibility,
            description=task.description,
            allowed_paths=list(role.scope.allowed_paths),
            out_of_scope=list(role.scope.out_of_scope),
            references=list(role.scope.references),
            instructions=role.instructions,
        )

    def dispatch(self, task: Task, role: RoleSpec,
                 cancel_event: Optional[threading.Event] = None) -> WorkerOutcome:
        cancel_event = cancel_event or threading.Event()
        invocation = self.build_invocation(task, role)
        t0 = time.perf_counter()
        try:
            report = self.runner.run(invocation, cancel_event)
        except Exception as e:
            _log.warning("Worker for task %s (%s) crashed: %s", task.id, role.name, e)
            return WorkerOutcome(
                task_id=task.id,
                error=f"{WORKER_DID_NOT_COMPLETE}: {e}",
                elapsed_seconds=time.perf_counter() - t0,
            )
        elapsed = time.perf_counter() - t0
        if report is None:
            return WorkerOutcome(task_id=task.id, error=NO_REPORT_PRODUCED,
                                 elapsed_seconds=elapsed)
        outside = [a for a in report.artifacts if not role.scope.permits(a)]
        if outside:
            _log.warning("Worker for task %s (%s) touched out-of-scope artifacts: %s",
                         task.id, role.name, ", ".join(outside))
            return WorkerOutcome(
                task_id=task.id,
                error=f"{OUTSIDE_ROLE_SCOPE} '{role.name}': {', '.join(outside)}",
                elapsed_seconds=elapsed,
            )
        return WorkerOutcome(task_id=task.id, report=report, elapsed_seconds=elapsed)
