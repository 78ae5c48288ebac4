"""Recipe data models and YAML parsing."""

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Literal

import yaml

from .ai.config import AiServiceConfig
from .ai.config import BudgetConfig
from .ai.config import ContextConfig
from .ai.config import Example
from .ai.config import GuardrailConfig

OUTPUT_MODES = ("create", "inject", "replace")
RESERVED_NAMES = ("recipe", "step", "steps")


@dataclass
class RecursionConfig:
    """Recursion protection configuration for nested recipes."""

    max_depth: int = 5  # Default: 5, configurable 1-20
    max_total_steps: int = 100  # Default: 100, configurable 1-1000

    def validate(self) -> list[str]:
        """Validate recursion config."""
        errors = []
        if not 1 <= self.max_depth <= 20:
            errors.append(f"recursion.max_depth must be 1-20, got {self.max_depth}")
        if not 1 <= self.max_total_steps <= 1000:
            errors.append(f"recursion.max_total_steps must be 1-1000, got {self.max_total_steps}")
        return errors


@dataclass
class RecipeSettings:
    """Execution settings for a recipe run."""

    max_concurrency: int = 10
    default_timeout: float | None = None
    continue_on_error: bool = False  # Default on_error for steps that don't set one

    def validate(self) -> list[str]:
        errors = []
        if self.max_concurrency < 1:
            errors.append(f"settings.max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            errors.append(f"settings.default_timeout must be positive, got {self.default_timeout}")
        return errors


@dataclass(frozen=True)
class OutputTarget:
    """Where a step's generated content goes.

    ``mode`` is one of:
    - "create": write ``to`` (fails if it exists unless ``overwrite``)
    - "inject": insert into ``to`` relative to ``after``/``before`` anchors,
      or at ``at`` ("start" | "end")
    - "replace": replace the text matching ``pattern`` in ``to``
    A target without ``to`` only stores the value in the step's output variable.
    """

    to: str | None = None
    mode: Literal["create", "inject", "replace"] = "create"
    after: str | None = None
    before: str | None = None
    at: Literal["start", "end"] | None = None
    pattern: str | None = None
    overwrite: bool = False

    @property
    def writes_file(self) -> bool:
        return self.to is not None


@dataclass
class Step:
    """Represents a single step in a recipe.

    The ``tool`` tag selects the tool that runs the step. Tool-specific fields
    are ignored by other tools and checked by the tool's own ``validate``.
    """

    name: str
    tool: str = ""

    # Template fields (tool="template")
    template: str | None = None  # Inline template text
    template_file: str | None = None  # Loaded through the template loader

    # Output target (template and ai)
    to: str | None = None
    mode: Literal["create", "inject", "replace"] = "create"
    after: str | None = None
    before: str | None = None
    at: Literal["start", "end"] | None = None
    pattern: str | None = None
    overwrite: bool = False

    # Action fields (tool="action")
    action: str | None = None
    params: dict[str, Any] = field(default_factory=dict)

    # Shell fields (tool="shell")
    command: str | None = None
    cwd: str | None = None  # Supports {{variable}} substitution
    env: dict[str, str] | None = None  # Values support {{variable}}

    # Nested recipe fields (tool="recipe")
    recipe: str | None = None  # Path relative to the parent recipe
    variables: dict[str, Any] | None = None  # Variables passed to the nested recipe
    recursion: RecursionConfig | None = None

    # AI fields (tool="ai")
    prompt: str | None = None
    system: str | None = None
    model: str | None = None
    provider: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    context: ContextConfig = field(default_factory=ContextConfig)
    examples: list[Example] = field(default_factory=list)
    guardrails: GuardrailConfig | None = None
    budget: BudgetConfig | None = None

    # Common fields
    output: str | None = None  # Variable that receives the step's value
    when: str | None = None
    depends_on: list[str] = field(default_factory=list)
    on_error: Literal["fail", "continue", "skip_remaining"] | None = None
    retries: int = 0
    retry_delay: float = 0.0
    retry_backoff: Literal["exponential", "linear"] = "exponential"
    max_retry_delay: float = 300.0
    timeout: float | None = None

    @property
    def output_target(self) -> OutputTarget:
        return OutputTarget(
            to=self.to,
            mode=self.mode,
            after=self.after,
            before=self.before,
            at=self.at,
            pattern=self.pattern,
            overwrite=self.overwrite,
        )

    def validate(self) -> list[str]:
        """Validate fields common to every tool."""
        errors = []

        if not self.name:
            errors.append("Step missing required field: name")
        if not self.tool:
            errors.append(f"Step '{self.name}': missing required field 'tool'")

        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"Step '{self.name}': timeout must be positive")

        if self.on_error is not None and self.on_error not in ("fail", "continue", "skip_remaining"):
            errors.append(f"Step '{self.name}': on_error must be 'fail', 'continue', or 'skip_remaining'")

        if self.retries < 0:
            errors.append(f"Step '{self.name}': retries must be >= 0")
        if self.retry_delay < 0:
            errors.append(f"Step '{self.name}': retry_delay must be >= 0")
        if self.retry_backoff not in ("exponential", "linear"):
            errors.append(f"Step '{self.name}': retry_backoff must be 'exponential' or 'linear'")

        if self.mode not in OUTPUT_MODES:
            errors.append(f"Step '{self.name}': mode must be one of {', '.join(OUTPUT_MODES)}, got '{self.mode}'")
        if self.at is not None and self.at not in ("start", "end"):
            errors.append(f"Step '{self.name}': at must be 'start' or 'end'")

        # Output name validation
        if self.output:
            if not self.output.replace("_", "").isalnum():
                errors.append(f"Step '{self.name}': output name must be alphanumeric with underscores")
            if self.output in RESERVED_NAMES:
                errors.append(f"Step '{self.name}': output name '{self.output}' is reserved")

        if self.name in self.depends_on:
            errors.append(f"Step '{self.name}': cannot depend on itself")

        return errors


@dataclass
class Recipe:
    """Represents a complete recipe definition."""

    name: str
    description: str = ""
    version: str = "1.0.0"
    steps: list[Step] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    settings: RecipeSettings = field(default_factory=RecipeSettings)
    ai: AiServiceConfig | None = None
    recursion: RecursionConfig | None = None
    author: str | None = None
    tags: list[str] = field(default_factory=list)
    path: Path | None = None  # Source file; nested recipe paths resolve against it

    @classmethod
    def _parse_step(cls, step_data: dict[str, Any]) -> Step:
        """Parse a single step from YAML data."""
        if not isinstance(step_data, dict):
            raise ValueError("Each step must be a dictionary")

        step_data_copy = dict(step_data)

        # 'continue_on_error: true' is shorthand for on_error: continue
        if "continue_on_error" in step_data_copy:
            if step_data_copy.pop("continue_on_error"):
                step_data_copy.setdefault("on_error", "continue")

        # 'with' is a Python keyword; accept it as an alias for action params
        if "with" in step_data_copy:
            step_data_copy["params"] = step_data_copy.pop("with") or {}

        if isinstance(step_data_copy.get("depends_on"), str):
            step_data_copy["depends_on"] = [step_data_copy["depends_on"]]

        if "recursion" in step_data_copy and isinstance(step_data_copy["recursion"], dict):
            step_data_copy["recursion"] = RecursionConfig(**step_data_copy["recursion"])

        if "context" in step_data_copy:
            step_data_copy["context"] = ContextConfig.from_value(step_data_copy["context"])
        if "examples" in step_data_copy:
            step_data_copy["examples"] = [Example.from_value(ex) for ex in step_data_copy["examples"] or []]
        if "guardrails" in step_data_copy:
            step_data_copy["guardrails"] = GuardrailConfig.from_dict(step_data_copy["guardrails"])
        if "budget" in step_data_copy:
            step_data_copy["budget"] = BudgetConfig.from_dict(step_data_copy["budget"])

        try:
            return Step(**step_data_copy)
        except TypeError as e:
            raise ValueError(f"Invalid step '{step_data.get('name', '?')}': {e}") from e

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path | None = None) -> "Recipe":
        """Build a recipe from already-parsed YAML data."""
        if not isinstance(data, dict):
            raise ValueError("Recipe YAML must be a dictionary")

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ValueError("'steps' must be a list")
        steps = [cls._parse_step(sd) for sd in steps_data]

        recursion_config = None
        if "recursion" in data and isinstance(data["recursion"], dict):
            recursion_config = RecursionConfig(**data["recursion"])

        settings = RecipeSettings()
        if "settings" in data and isinstance(data["settings"], dict):
            settings = RecipeSettings(**data["settings"])

        ai_config = None
        if "ai" in data and data["ai"] is not None:
            ai_config = AiServiceConfig.from_dict(data["ai"])

        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            version=str(data.get("version", "1.0.0")),
            steps=steps,
            variables=data.get("variables") or {},
            settings=settings,
            ai=ai_config,
            recursion=recursion_config,
            author=data.get("author"),
            tags=data.get("tags", []),
            path=path,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Recipe":
        """Load recipe from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data, path=path)

    @classmethod
    def from_yaml_string(cls, text: str) -> "Recipe":
        """Load recipe from a YAML string."""
        return cls.from_dict(yaml.safe_load(text))

    def validate(self) -> list[str]:
        """Validate recipe structure and constraints.

        Graph checks (unknown dependencies, cycles) live in
        ``validator.validate_recipe`` so they can report every problem at once.
        """
        errors = []

        if not self.name:
            errors.append("Recipe missing required field: name")
        if self.name and not self.name.replace("-", "").replace("_", "").isalnum():
            errors.append("Recipe name must be alphanumeric with hyphens/underscores")

        # Version format (strict semver check - MAJOR.MINOR.PATCH only)
        if self.version:
            if self.version.startswith("v"):
                errors.append("Recipe version must follow semver format without 'v' prefix (use '1.0.0' not 'v1.0.0')")
            elif "-" in self.version or "+" in self.version:
                errors.append(
                    "Recipe version must follow simple semver format (MAJOR.MINOR.PATCH only, no pre-release tags)"
                )
            else:
                parts = self.version.split(".")
                if len(parts) != 3:
                    errors.append("Recipe version must follow semver format (MAJOR.MINOR.PATCH)")
                elif not all(part.isdigit() for part in parts):
                    errors.append("Recipe version parts must be numeric (e.g., '1.0.0' not '1.a.0')")

        if not self.steps:
            errors.append("Recipe must have at least one step")

        for step in self.steps:
            errors.extend(step.validate())

        errors.extend(self.settings.validate())
        if self.recursion:
            errors.extend(self.recursion.validate())
        if self.ai:
            errors.extend(self.ai.validate())

        return errors

    def get_step(self, name: str) -> Step | None:
        """Get step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None
