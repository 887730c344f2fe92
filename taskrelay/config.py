"""
Configuration — model presets and engine settings with project-level config.

Loading priority:
  1. Project dir .taskrelay.yml
  2. Git root .taskrelay.yml
  3. Global ~/.taskrelay/config.yml

Environment files (~/.taskrelay/.env, <project>/.env) are loaded first and
never override variables that are already set.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Any

import yaml
from dotenv import load_dotenv

CONFIG_DIR = Path.home() / ".taskrelay"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".taskrelay.yml"

WORKER_RUNNERS = {"llm", "command"}


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "float", "bool"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_float_range(value: Any, min_val: float, max_val: float) -> tuple[bool, float, str]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return False, 0.0, "Must be a number"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val:g} and {max_val:g}"
    return True, parsed, ""


def _validate_enum(value: Any, valid_values: set) -> tuple[bool, str, str]:
    val_str = str(value).strip().lower()
    if val_str not in valid_values:
        return False, "", f"Must be one of: {', '.join(sorted(valid_values))}"
    return True, val_str, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "active-model": ConfigFieldSpec(
        key="active-model",
        field_name="active_model",
        description="Model preset used for delegated tasks and LLM workers",
        value_type="str",
        default="claude-sonnet",
    ),
    "max-parallel": ConfigFieldSpec(
        key="max-parallel",
        field_name="max_parallel",
        description="Maximum dispatches in flight at once",
        value_type="int",
        default=4,
        validator=lambda v: _validate_int_range(v, 1, 32),
    ),
    "task-timeout": ConfigFieldSpec(
        key="task-timeout",
        field_name="task_timeout",
        description="Wall-clock limit per dispatch in seconds",
        value_type="float",
        default=300.0,
        validator=lambda v: _validate_float_range(v, 1, 86400),
    ),
    "poll-interval": ConfigFieldSpec(
        key="poll-interval",
        field_name="poll_interval",
        description="Scheduler wake-up interval in seconds while waiting on dispatches",
        value_type="float",
        default=0.5,
        validator=lambda v: _validate_float_range(v, 0.01, 60),
    ),
    "results-dir": ConfigFieldSpec(
        key="results-dir",
        field_name="results_dir",
        description="Directory (relative to project) for delegated task results",
        value_type="str",
        default=".taskrelay/results",
    ),
    "store-file": ConfigFieldSpec(
        key="store-file",
        field_name="store_file",
        description="Task record snapshot file (relative to project)",
        value_type="str",
        default=".taskrelay/tasks.json",
    ),
    "log-file": ConfigFieldSpec(
        key="log-file",
        field_name="log_file",
        description="Rotating log file (relative to project); empty disables it",
        value_type="str",
        default=".taskrelay/logs/taskrelay.log",
    ),
    "worker-runner": ConfigFieldSpec(
        key="worker-runner",
        field_name="worker_runner",
        description="Local worker transport: llm or command",
        value_type="str",
        default="llm",
        validator=lambda v: _validate_enum(v, WORKER_RUNNERS),
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Enable verbose logging",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)

    if spec.value_type == "str":
        return True, str(value), ""
    elif spec.value_type == "int":
        try:
            return True, int(value), ""
        except (TypeError, ValueError):
            return False, spec.default, "Must be an integer"
    elif spec.value_type == "bool":
        return _validate_bool(value)

    return True, value, ""


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 8096
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_map = {
            "openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY", "gemini": "GEMINI_API_KEY",
        }
        env_var = env_map.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_llm_kwargs(self) -> dict:
        """Return kwargs dict for LLMAdapter constructor — direct, no env vars."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }


@dataclass
class Config:
    active_model: str = "claude-sonnet"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    max_parallel: int = 4
    task_timeout: float = 300.0
    poll_interval: float = 0.5
    results_dir: str = ".taskrelay/results"
    store_file: str = ".taskrelay/tasks.json"
    log_file: str = ".taskrelay/logs/taskrelay.log"
    worker_runner: str = "llm"
    worker_command: List[str] = field(default_factory=list)
    verbose: bool = False
    roles_config: Dict = field(default_factory=dict)  # roles: section from YAML
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                break

        if not config.models:
            config._add_default_presets()

        config._apply_env()
        config.project_root = str(project_path)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "claude-sonnet": ModelPreset(
                name="claude-sonnet", provider="anthropic",
                model="anthropic/claude-sonnet-4-20250514",
                api_key_env="ANTHROPIC_API_KEY",
                description="Claude Sonnet 4 (delegated research/design)",
                max_tokens=8096,
            ),
            "deepseek-chat": ModelPreset(
                name="deepseek-chat", provider="deepseek",
                model="deepseek/deepseek-chat",
                api_key_env="DEEPSEEK_API_KEY",
                description="DeepSeek chat",
                max_tokens=4096,
            ),
            "local": ModelPreset(
                name="local", provider="local", model="openai/model",
                api_base="http://localhost:8080/v1", api_key="not-needed",
                description="Local model (vLLM / llama.cpp on :8080)",
                max_tokens=4096,
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        if self.active_model not in self.models:
            self.active_model = "claude-sonnet"

    def _load_yaml(self, filepath: Path):
        with open(filepath, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return

        self.active_model = str(data.get("active-model", self.active_model))
        self.max_parallel = self._coerce_positive_int(
            data.get("max-parallel", 4), default=4, min_value=1, max_value=32
        )
        self.task_timeout = self._coerce_positive_float(
            data.get("task-timeout", 300.0), default=300.0, min_value=1.0, max_value=86400.0
        )
        self.poll_interval = self._coerce_positive_float(
            data.get("poll-interval", 0.5), default=0.5, min_value=0.01, max_value=60.0
        )
        self.results_dir = str(data.get("results-dir", self.results_dir))
        self.store_file = str(data.get("store-file", self.store_file))
        self.log_file = str(data.get("log-file", self.log_file) or "")
        self.verbose = self._coerce_bool(data.get("verbose", False), default=False)

        worker = data.get("worker", {}) or {}
        runner = str(worker.get("runner", "llm")).strip().lower()
        self.worker_runner = runner if runner in WORKER_RUNNERS else "llm"
        command = worker.get("command", [])
        if isinstance(command, str):
            command = command.split()
        self.worker_command = [str(part) for part in command]

        self.roles_config = data.get("roles", {}) or {}

        self.models = {}
        for name, m in (data.get("models", {}) or {}).items():
            self.models[name] = ModelPreset(
                name=name, provider=m.get("provider", "anthropic"),
                model=m.get("model", "anthropic/claude-sonnet-4-20250514"),
                api_base=m.get("api-base"), api_key=m.get("api-key"),
                api_key_env=m.get("api-key-env"),
                temperature=m.get("temperature", 0.0),
                max_tokens=m.get("max-tokens", 8096),
                description=m.get("description", ""),
            )

    def _apply_env(self):
        env_map = {
            "TASKRELAY_MODEL": ("active_model", str),
            "TASKRELAY_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
            "TASKRELAY_MAX_PARALLEL": (
                "max_parallel",
                lambda v: self._coerce_positive_int(v, default=self.max_parallel, min_value=1, max_value=32),
            ),
            "TASKRELAY_TASK_TIMEOUT": (
                "task_timeout",
                lambda v: self._coerce_positive_float(v, default=self.task_timeout, min_value=1.0, max_value=86400.0),
            ),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                try:
                    setattr(self, attr, conv(val))
                except (ValueError, TypeError):
                    pass

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "active-model": self.active_model,
            "max-parallel": self.max_parallel,
            "task-timeout": self.task_timeout,
            "poll-interval": self.poll_interval,
            "results-dir": self.results_dir,
            "store-file": self.store_file,
            "log-file": self.log_file,
            "verbose": self.verbose,
            "worker": {"runner": self.worker_runner, "command": list(self.worker_command)},
            "roles": self.roles_config,
            "models": {},
        }
        for name, m in self.models.items():
            entry = {"provider": m.provider, "model": m.model,
                     "description": m.description, "temperature": m.temperature,
                     "max-tokens": m.max_tokens}
            if m.api_base:
                entry["api-base"] = m.api_base
            if m.api_key:
                entry["api-key"] = m.api_key
            if m.api_key_env:
                entry["api-key-env"] = m.api_key_env
            data["models"][name] = entry

        with open(target, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        return self.get_default_presets()["claude-sonnet"]

    @property
    def source(self) -> str:
        """File the settings were read from; empty when only defaults apply."""
        return self._config_source

    def resolve_path(self, relative: str) -> Path:
        """Resolve a config path against the project root."""
        path = Path(relative).expanduser()
        if path.is_absolute():
            return path
        return Path(self.project_root or ".").resolve() / path

    def set_config_value(self, key: str, value: Any) -> tuple[bool, str]:
        """
        Set configuration value with validation (in memory only).

        Returns:
            (success, error_message)
        """
        if key == "active-model":
            if value not in self.models:
                return False, f"Model '{value}' not found"
            self.active_model = value
            return True, ""

        is_valid, coerced_value, error_msg = validate_config_value(key, value)
        if not is_valid:
            return False, error_msg

        spec = CONFIG_FIELDS[key]
        setattr(self, spec.field_name, coerced_value)
        return True, ""

    @staticmethod
    def _coerce_bool(value, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
        if isinstance(value, (int, float)):
            return bool(value)
        return default

    @staticmethod
    def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return default
        if parsed < min_value:
            return min_value
        if parsed > max_value:
            return max_value
        return parsed

    @staticmethod
    def _coerce_positive_float(value, default: float, min_value: float = 0.0,
                               max_value: float = 1e9) -> float:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return default
        return max(min_value, min(max_value, parsed))

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None
