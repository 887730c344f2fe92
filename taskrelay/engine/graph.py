"""Task graph validation and ordering helpers."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from ..errors import ValidationError
from .tasks import Task


def find_cycle(tasks: List[Task]) -> Optional[List[str]]:
    """Return one dependency cycle as a list of ids (first id repeated at the end), or None.

    Only edges between tasks in ``tasks`` are considered.
    """
    graph: Dict[str, List[str]] = {
        t.id: [d for d in t.depends_on] for t in tasks
    }
    WHITE, GREY, BLACK = 0, 1, 2
    color = {tid: WHITE for tid in graph}

    for root in graph:
        if color[root] != WHITE:
            continue
        stack = [(root, iter(graph[root]))]
        path = [root]
        color[root] = GREY
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if child not in graph:
                    continue
                if color[child] == GREY:
                    return path[path.index(child):] + [child]
                if color[child] == WHITE:
                    color[child] = GREY
                    stack.append((child, iter(graph[child])))
                    path.append(child)
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                stack.pop()
                path.pop()
    return None


def validate_graph(tasks: List[Task], known_ids: Iterable[str] = ()) -> None:
    """Check that a submitted graph can be admitted as a whole.

    ``known_ids`` are tasks already in the store that new tasks may depend on.

    Raises:
        ValidationError: bad task shape, duplicate ids, unknown dependencies,
            or a dependency cycle.
    """
    if not tasks:
        raise ValidationError("Task graph is empty")

    seen: Dict[str, Task] = {}
    for task in tasks:
        task.validate()
        if task.id in seen:
            raise ValidationError(f"Duplicate task id '{task.id}' in graph")
        seen[task.id] = task

    known = set(known_ids)
    for task in tasks:
        missing = [d for d in task.depends_on if d not in seen and d not in known]
        if missing:
            raise ValidationError(
                f"Task '{task.id}' depends on unknown task(s): {', '.join(missing)}"
            )

    cycle = find_cycle(tasks)
    if cycle:
        raise ValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")


def topo_layers(tasks: List[Task]) -> List[List[Task]]:
    """Group an acyclic graph into layers; each layer depends only on earlier ones.

    Dependencies outside ``tasks`` count as already satisfied. Order within a
    layer follows the input order.
    """
    ids = {t.id for t in tasks}
    placed: set = set()
    layers: List[List[Task]] = []
    remaining = list(tasks)

    while remaining:
        layer = [
            t for t in remaining
            if all(d in placed or d not in ids for d in t.depends_on)
        ]
        if not layer:
            raise ValidationError("Dependency cycle detected")
        placed.update(t.id for t in layer)
        remaining = [t for t in remaining if t.id not in placed]
        layers.append(layer)
    return layers


def load_graph_file(path: Union[str, Path]) -> List[Task]:
    """Load a task graph from a YAML or JSON file.

    Accepts either a bare list of task mappings or a mapping with ``tasks``
    and an optional ``feature`` applied to tasks that don't name one.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Cannot parse task graph {path}: {e}") from e

    feature = None
    if isinstance(data, dict):
        feature = data.get("feature")
        entries = data.get("tasks")
    else:
        entries = data
    if not isinstance(entries, list):
        raise ValidationError(f"Task graph {path} must contain a list of tasks")

    tasks = []
    for entry in entries:
        if isinstance(entry, dict) and feature and not entry.get("feature"):
            entry = {**entry, "feature": feature}
        tasks.append(Task.from_dict(entry))
    return tasks
