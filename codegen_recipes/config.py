"""Engine configuration."""

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

from .ai.config import AiServiceConfig
from .errors import ConfigError


@dataclass
class EngineConfig:
    """Settings shared by every run of one engine."""

    max_concurrency: int = 10  # Upper bound; a recipe may ask for less
    default_timeout: float | None = None  # Per-step timeout in seconds
    template_paths: list[Path] = field(default_factory=list)
    action_collision_policy: str = "warn"  # "warn" or "error"
    answer_concurrency: int = 4  # Parallel generations between passes
    ai: AiServiceConfig = field(default_factory=AiServiceConfig)

    def validate(self) -> list[str]:
        errors = []
        if self.max_concurrency < 1:
            errors.append(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            errors.append(f"default_timeout must be positive, got {self.default_timeout}")
        if self.action_collision_policy not in ("warn", "error"):
            errors.append(f"action_collision_policy must be 'warn' or 'error', got '{self.action_collision_policy}'")
        if self.answer_concurrency < 1:
            errors.append(f"answer_concurrency must be >= 1, got {self.answer_concurrency}")
        errors.extend(self.ai.validate())
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "EngineConfig":
        """
        Build config from a parsed mapping.

        Relative template paths are resolved against ``base_dir`` when given.
        """
        data = dict(data)
        paths = data.pop("template_paths", []) or []
        if isinstance(paths, str):
            paths = [paths]
        template_paths = [Path(p) if base_dir is None or Path(p).is_absolute() else base_dir / p for p in paths]
        try:
            ai = AiServiceConfig.from_dict(data.pop("ai", None))
            return cls(template_paths=template_paths, ai=ai, **data)
        except TypeError as e:
            raise ConfigError(f"Invalid engine config: {e}") from e


def load_config(path: Path) -> EngineConfig:
    """
    Load and validate engine configuration from a YAML file.

    Raises:
        ConfigError: If the file is missing, unparsable, or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")

    try:
        config = EngineConfig.from_dict(data, base_dir=path.parent)
    except ValueError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    errors = config.validate()
    if errors:
        raise ConfigError(f"Invalid config in {path}: {'; '.join(errors)}")
    return config
