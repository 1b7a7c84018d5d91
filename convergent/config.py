"""
Engine configuration.

Read from ``convergent.yaml`` in the working directory when present, the same
way custom rule files are picked up; CLI options override file values.
"""
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

import yaml

from convergent.errors import ConfigError

CONFIG_FILE = "convergent.yaml"
DEFAULT_STATE_PATH = "convergent.state.json"


@dataclass(frozen=True)
class EngineConfig:
    max_workers: int = 4
    # one call plus three retries
    max_attempts: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    action_poll_interval: float = 2.0
    action_poll_max_interval: float = 30.0
    action_timeout: float = 600.0
    state_path: str = DEFAULT_STATE_PATH

    def __post_init__(self):
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        for name in ("retry_base_delay", "retry_max_delay", "action_poll_interval",
                     "action_poll_max_interval", "action_timeout"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(name: str, expected: type, value: Any) -> Any:
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, expected) or isinstance(value, bool):
        raise ConfigError(f"{name}: expected {expected.__name__}, got {value!r}")
    return value


def from_dict(data: Dict[str, Any]) -> EngineConfig:
    known = {f.name: f for f in fields(EngineConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"unknown configuration key(s): {', '.join(unknown)}")
    types = {"max_workers": int, "max_attempts": int, "state_path": str}
    values = {
        k: _coerce(k, types.get(k, float), v)
        for k, v in data.items()
    }
    return EngineConfig(**values)


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load configuration from ``path`` or from ``convergent.yaml`` if it exists."""
    if path is None:
        if not os.path.exists(CONFIG_FILE):
            return EngineConfig()
        path = CONFIG_FILE

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    return from_dict(data)
