"""DelegationExecutor: sends a delegable task to the generation service."""

from typing import Any, Dict

from ..llm import LLMAdapter
from ..logger import get_logger
from .prompts import build_system_prompt, build_user_prompt
from .tasks import DelegationOutcome, Task

_log = get_logger(__name__)

_PING_PROMPT = 'Hello! Please respond with "Connection successful".'


class DelegationExecutor:
    """Stateless bridge between a task and one generation call.

    ``execute`` never raises: every failure comes back as a
    ``DelegationOutcome`` with ``error`` set so the scheduler can treat
    outcomes uniformly as data. No retries happen here.
    """

    def __init__(self, llm: LLMAdapter):
        self.llm = llm

    def build_messages(self, task: Task) -> list:
        return [
            {"role": "system", "content": build_system_prompt(task.kind, task.output_format)},
            {"role": "user", "content": build_user_prompt(
                task.description, task.context, task.output_format,
            )},
        ]

    def execute(self, task: Task) -> DelegationOutcome:
        try:
            messages = self.build_messages(task)
            response = self.llm.chat(messages=messages)
        except Exception as e:
            _log.warning("Delegated task %s failed: %s", task.id, e)
            return DelegationOutcome(task_id=task.id, error=str(e), model=self.llm.model)

        content = response.content or ""
        if not content.strip():
            return DelegationOutcome(
                task_id=task.id,
                error="Generation service returned no text content",
                model=response.model,
                stop_reason=response.stop_reason,
            )

        usage = response.usage or {}
        return DelegationOutcome(
            task_id=task.id,
            content=content,
            usage={
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
            model=response.model,
            stop_reason=response.stop_reason,
        )

    def test_connection(self) -> Dict[str, Any]:
        """Send a tiny connection check; returns ``{"success", "response"|"error"}``."""
        try:
            response = self.llm.chat(
                messages=[{"role": "user", "content": _PING_PROMPT}],
                max_tokens=100,
            )
        except Exception as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "response": response.content or ""}
