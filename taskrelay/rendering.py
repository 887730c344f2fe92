"""Console rendering: event log lines, task tables, and result views."""

import threading
from typing import Dict, List, Optional, Tuple

from rich.console import Console, Group
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from .engine.events import EventType, TaskEvent
from .engine.graph import topo_layers
from .engine.tasks import OutputFormat, Task, TaskStatus
from .theme import ACCENT, BORDER, DIM, ERROR, INFO, SUCCESS, TEXT, WARN

# Global flag to control Unicode vs ASCII (set from --ascii)
_USE_UNICODE = True

_ICON_MAP = {
    "✓": "[OK]",
    "✗": "[X]",
    "▸": ">",
    "○": "o",
    "●": "*",
    "–": "-",
    "+": "+",
}


def set_use_unicode(enabled: bool) -> None:
    global _USE_UNICODE
    _USE_UNICODE = enabled


def get_icon(unicode_icon: str) -> str:
    if _USE_UNICODE:
        return unicode_icon
    return _ICON_MAP.get(unicode_icon, unicode_icon)


# Status display: (icon_char, color, label)
_STATUS_DISPLAY = {
    TaskStatus.PENDING:     ("○", DIM,     "pending"),
    TaskStatus.IN_PROGRESS: ("▸", INFO,    "running"),
    TaskStatus.COMPLETED:   ("✓", SUCCESS, "completed"),
    TaskStatus.FAILED:      ("✗", ERROR,   "failed"),
    TaskStatus.CANCELLED:   ("–", WARN,    "cancelled"),
}

_EVENT_DISPLAY = {
    EventType.SUBMITTED: ("+", DIM),
    EventType.STARTED:   ("▸", INFO),
    EventType.COMPLETED: ("✓", SUCCESS),
    EventType.FAILED:    ("✗", ERROR),
    EventType.CANCELLED: ("–", WARN),
}


def _status_cell(status: TaskStatus) -> str:
    icon, color, label = _STATUS_DISPLAY[status]
    return f"[{color}]{escape(get_icon(icon))} {label}[/{color}]"


class TaskRenderer:
    """Renders engine activity to a rich console; safe to call from any thread."""

    def __init__(self, console: Console):
        self.console = console
        self._lock = threading.Lock()

    def _print(self, markup) -> None:
        with self._lock:
            self.console.print(markup)

    # ── Event sink ────────────────────────────────────────

    def on_event(self, event: TaskEvent) -> None:
        """EventBus sink: one line per lifecycle event."""
        icon, color = _EVENT_DISPLAY[event.type]
        line = (
            f"  [{color}]{escape(get_icon(icon))}[/{color}] "
            f"[bold]{event.task_id}[/bold] [{DIM}]{event.type.value}[/{DIM}]"
        )
        if event.type == EventType.FAILED:
            brief = escape((event.detail or "unknown")[:80])
            line += f" [{ERROR}]{brief}[/{ERROR}]"
        elif event.detail:
            line += f" [{DIM}]{escape(event.detail)}[/{DIM}]"
        self._print(line)

    # ── Plan and tables ───────────────────────────────────

    def render_plan(self, tasks: List[Task]) -> None:
        """Show the submitted graph as dependency layers."""
        text = Text()
        for i, layer in enumerate(topo_layers(tasks), start=1):
            text.append(f"  {i}. ", style=DIM)
            text.append("  ".join(t.id for t in layer), style=f"bold {ACCENT}")
            text.append("\n")
        self._print(Panel(
            text,
            title=f"[bold {ACCENT}] Task Plan [/bold {ACCENT}]",
            title_align="left",
            border_style=BORDER,
            padding=(0, 1),
        ))

    def render_task_table(self, tasks: List[Task], title: str = "Tasks") -> None:
        table = Table(
            show_header=True,
            header_style=f"bold {ACCENT}",
            border_style=BORDER,
            padding=(0, 1),
        )
        table.add_column("ID", style="bold", min_width=6)
        table.add_column("Kind", min_width=10)
        table.add_column("Role", min_width=8)
        table.add_column("Status", min_width=10)
        table.add_column("Depends On", min_width=10)
        table.add_column("Description", min_width=30)

        for task in tasks:
            table.add_row(
                task.id,
                task.kind.value,
                task.role or "-",
                _status_cell(task.status),
                ", ".join(task.depends_on) or "-",
                escape(task.description),
            )
        self._print(Panel(
            table,
            title=f"[bold {ACCENT}] {title} [/bold {ACCENT}]",
            title_align="left",
            border_style=BORDER,
            padding=(0, 1),
        ))

    def render_stats(self, stats: Dict[str, int]) -> None:
        parts = []
        for status in TaskStatus:
            _, color, label = _STATUS_DISPLAY[status]
            parts.append(f"[{color}]{label} {stats.get(status.value, 0)}[/{color}]")
        parts.append(f"[{DIM}]total {stats.get('total', 0)}[/{DIM}]")
        self._print("  " + f" [{DIM}]│[/{DIM}] ".join(parts))

    def render_config(self, rows: List[Tuple[str, object, str]], source: str) -> None:
        """Settings table: (key, value, description) rows."""
        table = Table(show_header=False, border_style=BORDER, padding=(0, 2), box=None)
        table.add_column("Key", style=f"bold {ACCENT}", min_width=14)
        table.add_column("Value", style=TEXT)
        table.add_column("Description", style=DIM)
        for key, value, description in rows:
            table.add_row(key, escape(str(value)), escape(description))
        self._print(Panel(
            table,
            title=f"[bold {ACCENT}] Configuration [/bold {ACCENT}]",
            subtitle=f"[{DIM}]{escape(source)}[/{DIM}]",
            subtitle_align="right",
            title_align="left",
            border_style=BORDER,
            padding=(0, 1),
        ))

    # ── Single task view ──────────────────────────────────

    def render_result(self, task: Task) -> None:
        header = Text()
        header.append(f"{task.id} ", style="bold")
        header.append(f"{task.kind.value}", style=DIM)
        if task.role:
            header.append(f" · {task.role}", style=DIM)

        body: List = [Text.from_markup(_status_cell(task.status))]
        if task.error:
            body.append(Text(task.error, style=ERROR))
        if task.content:
            body.append(Text(""))
            body.append(self._content_renderable(task))
        if task.result_path:
            body.append(Text(f"saved to {task.result_path}", style=DIM))

        self._print(Panel(
            Group(*body),
            title=header,
            title_align="left",
            border_style=BORDER,
            padding=(0, 1),
        ))

    @staticmethod
    def _content_renderable(task: Task):
        if task.output_format == OutputFormat.MARKDOWN and task.is_delegable:
            return Markdown(task.content)
        if task.output_format == OutputFormat.JSON or not task.is_delegable:
            return Syntax(task.content, "json", theme="ansi_dark", word_wrap=True)
        return Text(task.content)

    def render_error(self, message: str, hint: Optional[str] = None) -> None:
        line = f"[{ERROR}]{escape(get_icon('✗'))} {escape(message)}[/{ERROR}]"
        if hint:
            line += f"\n  [{DIM}]{escape(hint)}[/{DIM}]"
        self._print(line)
