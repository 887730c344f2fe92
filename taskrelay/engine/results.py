"""ResultStore: write-once result files grouped by feature."""

import re
from pathlib import Path
from typing import Optional, Union

from ..logger import get_logger

_log = get_logger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_segment(value: str) -> str:
    cleaned = _UNSAFE_RE.sub("-", value.strip()).strip(".-")
    return cleaned or "default"


class ResultStore:
    """Persists completed delegated results under ``<root>/<feature>/<filename>``.

    Files are never overwritten; lookup is by feature + filename only.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, feature: str, filename: str) -> Path:
        return self.root / _safe_segment(feature) / _safe_segment(filename)

    def write(self, feature: str, filename: str, content: str) -> Path:
        """Create the result file. Raises FileExistsError if it already exists."""
        path = self.path_for(feature, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "x", encoding="utf-8") as f:
            f.write(content)
        _log.info("Stored result at %s", path)
        return path

    def read(self, feature: str, filename: str) -> Optional[str]:
        path = self.path_for(feature, filename)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")
