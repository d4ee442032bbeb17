"""
Converge Configuration

Engine settings, loadable from a YAML file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from converge.engine.errors import ConfigError

CONFIG_ENV_VAR = "CONVERGE_CONFIG"


@dataclass
class EngineConfig:
    """
    Configuration for a run.

    Attributes:
        forks: Maximum concurrent module invocations
        timeout: Per-play timeout in seconds (None = no limit)
        tags: Only run tasks with these tags
        skip_tags: Skip tasks with these tags
        limit: Host pattern further restricting every play
        defaults: Engine default variables (lowest precedence)
        force_handlers: Run notified handlers on failed hosts too
        verbosity: Number of -v flags
        log_file: Also write logs to this file
        json_output: Print the run report as JSON instead of progress output
    """

    forks: int = 5
    timeout: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    skip_tags: List[str] = field(default_factory=list)
    limit: Optional[str] = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    force_handlers: bool = False
    verbosity: int = 0
    log_file: Optional[str] = None
    json_output: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.forks, int) or isinstance(self.forks, bool) or self.forks < 1:
            raise ConfigError(f"'forks' must be a positive integer, got {self.forks!r}")
        if self.timeout is not None:
            if isinstance(self.timeout, bool) or not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
                raise ConfigError(f"'timeout' must be a positive number, got {self.timeout!r}")
        if not isinstance(self.defaults, dict):
            raise ConfigError("'defaults' must be a mapping")
        self.tags = _tag_list(self.tags, 'tags')
        self.skip_tags = _tag_list(self.skip_tags, 'skip_tags')

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[str] = None) -> 'EngineConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}", file_path=source)
        if source is None:
            return cls(**data)
        try:
            return cls(**data)
        except ConfigError as e:
            raise ConfigError("Invalid configuration", file_path=source, details=e.message) from e

    def merged(self, **overrides: Any) -> 'EngineConfig':
        """Copy with the non-None overrides applied (CLI flags over file)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in overrides.items() if v is not None})
        return EngineConfig(**data)


def _tag_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(',') if t.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(t) for t in value]
    raise ConfigError(f"'{name}' must be a list or comma-separated string")


def load_config(path: Union[str, Path, None] = None) -> EngineConfig:
    """
    Load configuration from ``path`` or ``$CONVERGE_CONFIG``.

    Returns the defaults when neither is given.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return EngineConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}", file_path=str(config_path))
    try:
        data = yaml.safe_load(config_path.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML syntax error: {e}", file_path=str(config_path))
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping", file_path=str(config_path))
    return EngineConfig.from_dict(data, source=str(config_path))


# Default configuration
_config = EngineConfig()


def get_config() -> EngineConfig:
    """Get the current engine configuration."""
    return _config


def set_config(config: EngineConfig) -> None:
    """Set the engine configuration."""
    global _config
    _config = config


def configure(**kwargs: Any) -> EngineConfig:
    """Update individual engine settings."""
    global _config
    _config = _config.merged(**kwargs)
    return _config
