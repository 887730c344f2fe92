"""Role definitions for local workers — each role is an explicit capability set."""

from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Dict, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import Config


@dataclass(frozen=True)
class RoleScope:
    """What a worker may touch and read. Workers see nothing outside this."""

    allowed_paths: Tuple[str, ...] = ()
    out_of_scope: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()

    def permits(self, path: str) -> bool:
        """True if ``path`` matches an allowed glob. No globs means no restriction."""
        if not self.allowed_paths:
            return True
        normalized = path.replace("\\", "/").removeprefix("./")
        return any(fnmatch(normalized, pattern) for pattern in self.allowed_paths)


@dataclass
class RoleSpec:
    """Specification for a local worker role — drives worker invocation."""

    name: str
    description: str
    responsibility: str
    scope: RoleScope = field(default_factory=RoleScope)
    instructions: str = ""
    model_override: Optional[str] = None
    temperature_override: Optional[float] = None


DEFAULT_ROLES: Dict[str, RoleSpec] = {
    "database": RoleSpec(
        name="database",
        description="Schema, migrations, and data access",
        responsibility=(
            "Own the database layer: schema definitions, migrations, queries, "
            "and repository code."
        ),
        scope=RoleScope(
            allowed_paths=("migrations/*", "**/models/*", "**/repositories/*", "db/*"),
            out_of_scope=("HTTP handlers and routing", "frontend code", "deployment config"),
            references=("standards/database.md",),
        ),
    ),
    "api": RoleSpec(
        name="api",
        description="HTTP endpoints and request handling",
        responsibility=(
            "Own the API layer: routes, request validation, serialization, "
            "and error responses."
        ),
        scope=RoleScope(
            allowed_paths=("api/*", "**/routes/*", "**/handlers/*", "**/schemas/*"),
            out_of_scope=("database migrations", "frontend code"),
            references=("standards/api.md", "standards/security.md"),
        ),
    ),
    "frontend": RoleSpec(
        name="frontend",
        description="User interface components and styling",
        responsibility="Own the user interface: components, pages, styles, and client state.",
        scope=RoleScope(
            allowed_paths=("web/*", "frontend/*", "**/components/*"),
            out_of_scope=("server code", "database schema"),
            references=("standards/frontend.md",),
        ),
    ),
    "testing": RoleSpec(
        name="testing",
        description="Automated tests and verification",
        responsibility="Write and run tests; report failures with reproduction steps.",
        scope=RoleScope(
            allowed_paths=("tests/*", "**/test_*", "**/*_test.*"),
            out_of_scope=("production code changes beyond test fixtures",),
            references=("standards/testing.md",),
        ),
    ),
}

ROLE_ALIASES = {"db": "database", "backend": "api", "ui": "frontend", "qa": "testing", "tester": "testing"}


def _as_tuple(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def load_roles_from_config(config: Optional["Config"]) -> Dict[str, RoleSpec]:
    """Load role definitions from config, falling back to defaults."""
    roles_cfg = getattr(config, "roles_config", None) or {}

    roles = dict(DEFAULT_ROLES)

    for name, spec in roles_cfg.items():
        spec = spec or {}
        roles[name] = RoleSpec(
            name=name,
            description=spec.get("description", name),
            responsibility=spec.get("responsibility", spec.get("description", name)),
            scope=RoleScope(
                allowed_paths=_as_tuple(spec.get("allowed-paths")),
                out_of_scope=_as_tuple(spec.get("out-of-scope")),
                references=_as_tuple(spec.get("references")),
            ),
            instructions=spec.get("instructions", ""),
            model_override=spec.get("model-override"),
            temperature_override=spec.get("temperature-override"),
        )

    return roles


def resolve_role(name: Optional[str], roles: Dict[str, RoleSpec]) -> Optional[RoleSpec]:
    """Look up a role by name or alias; None when unknown."""
    if not name:
        return None
    if name in roles:
        return roles[name]
    key = name.strip().lower()
    if key in roles:
        return roles[key]
    alias = ROLE_ALIASES.get(key)
    if alias and alias in roles:
        return roles[alias]
    return None
