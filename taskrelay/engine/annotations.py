"""Adapter from annotated free-text task lists to typed tasks.

Each non-empty line is one task. Bracket tags carry metadata, the rest of
the line is the description::

    - [id:r1] [kind:research] Compare OAuth providers for the admin app
    - [id:d1] [role:db] [depends-on:r1] Add the sessions table
    - [kind:documentation] [format:json] [depends-on:r1,d1] Summarize the schema

A ``role`` tag without ``kind`` means an implementation task. Lines without
an ``id`` tag get ``t1``, ``t2``, ... in order.
"""

import re
from typing import Dict, List, Optional

from ..errors import ValidationError
from .tasks import Task

_TAG_RE = re.compile(r"\[\s*([a-zA-Z_-]+)\s*:\s*([^\]]*)\]")
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")

_TAG_FIELDS = {
    "id": "id",
    "kind": "kind",
    "type": "kind",
    "role": "role",
    "depends-on": "depends_on",
    "depends_on": "depends_on",
    "format": "output_format",
    "feature": "feature",
    "output": "output_filename",
}


def parse_annotated_line(line: str) -> Optional[Dict[str, object]]:
    """Parse one line into a task mapping; None for blank/comment lines."""
    text = _BULLET_RE.sub("", line).strip()
    if not text or text.startswith("#"):
        return None

    fields: Dict[str, object] = {}
    for m in _TAG_RE.finditer(text):
        name = m.group(1).strip().lower()
        value = m.group(2).strip()
        target = _TAG_FIELDS.get(name)
        if target is None:
            raise ValidationError(f"Unknown annotation '[{name}:...]' in line: {line.strip()}")
        if target == "depends_on":
            deps = [d.strip() for d in value.split(",") if d.strip()]
            fields.setdefault("depends_on", [])
            fields["depends_on"].extend(deps)
        else:
            fields[target] = value

    fields["description"] = re.sub(r"\s{2,}", " ", _TAG_RE.sub("", text)).strip()
    if "kind" not in fields and fields.get("role"):
        fields["kind"] = "implementation"
    return fields


def parse_annotated_tasks(text: str) -> List[Task]:
    """Turn an annotated task list into tasks ready for submission."""
    tasks: List[Task] = []
    for line in text.splitlines():
        fields = parse_annotated_line(line)
        if fields is None:
            continue
        fields.setdefault("id", f"t{len(tasks) + 1}")
        if "kind" not in fields:
            raise ValidationError(
                f"Task '{fields['id']}' needs a [kind:...] or [role:...] annotation"
            )
        tasks.append(Task.from_dict(fields))
    return tasks
