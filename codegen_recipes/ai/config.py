"""Configuration models for AI generation: budgets, guardrails, providers."""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any
from typing import Literal

VALIDATION_KINDS = ("json", "yaml", "python", "text")
FAILURE_POLICIES = ("error", "fallback")
OVERFLOW_POLICIES = ("skip", "truncate", "error")


@dataclass(frozen=True)
class ModelPricing:
    """USD price per one million tokens."""

    input_per_million: float
    output_per_million: float


# Prices in USD per 1M tokens. Overridable per config via `cost_table`.
DEFAULT_COST_TABLE: dict[str, ModelPricing] = {
    "claude-sonnet-4-5": ModelPricing(3.0, 15.0),
    "claude-haiku-3-5": ModelPricing(0.8, 4.0),
    "gpt-4o": ModelPricing(2.5, 10.0),
    "gpt-4o-mini": ModelPricing(0.15, 0.6),
}


@dataclass(frozen=True)
class ModelRef:
    """A provider plugin name plus the model it should serve."""

    provider: str
    model: str

    @classmethod
    def parse(cls, value: "str | dict[str, Any] | ModelRef", default_provider: str) -> "ModelRef":
        """Parse ``"provider:model"``, ``"model"`` or ``{"provider": ..., "model": ...}``."""
        if isinstance(value, ModelRef):
            return value
        if isinstance(value, dict):
            if "model" not in value:
                raise ValueError(f"Fallback entry missing 'model': {value}")
            return cls(provider=value.get("provider", default_provider), model=value["model"])
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid model reference: {value!r}")
        provider, sep, model = value.partition(":")
        if sep and provider and model:
            return cls(provider=provider, model=model)
        return cls(provider=default_provider, model=value)

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass
class BudgetConfig:
    """Token and cost ceilings for one run."""

    max_tokens: int | None = None
    max_cost_usd: float | None = None
    warn_at_cost_usd: float | None = None

    def validate(self) -> list[str]:
        """Validate budget ceilings."""
        errors = []
        if self.max_tokens is not None and self.max_tokens <= 0:
            errors.append(f"budget.max_tokens must be positive, got {self.max_tokens}")
        if self.max_cost_usd is not None and self.max_cost_usd < 0:
            errors.append(f"budget.max_cost_usd must be >= 0, got {self.max_cost_usd}")
        if self.warn_at_cost_usd is not None:
            if self.warn_at_cost_usd < 0:
                errors.append(f"budget.warn_at_cost_usd must be >= 0, got {self.warn_at_cost_usd}")
            elif self.max_cost_usd is not None and self.warn_at_cost_usd > self.max_cost_usd:
                errors.append("budget.warn_at_cost_usd must not exceed budget.max_cost_usd")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BudgetConfig":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("budget must be a dictionary")
        return cls(**data)


@dataclass
class GuardrailConfig:
    """Output validation and retry policy for a generation request."""

    max_retries: int = 2
    validate_as: Literal["json", "yaml", "python", "text"] | None = None  # YAML: "validate"
    on_failure: Literal["error", "fallback"] = "error"
    fallback: str | None = None
    feedback: bool = True  # Send validation errors back to the model on retry
    max_output_length: int | None = None
    allowed_imports: list[str] | None = None
    blocked_imports: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Validate guardrail settings."""
        errors = []
        if self.max_retries < 0:
            errors.append(f"guardrails.max_retries must be >= 0, got {self.max_retries}")
        if self.validate_as is not None and self.validate_as not in VALIDATION_KINDS:
            errors.append(
                f"guardrails.validate must be one of {', '.join(VALIDATION_KINDS)}, got '{self.validate_as}'"
            )
        if self.on_failure not in FAILURE_POLICIES:
            errors.append(f"guardrails.on_failure must be 'error' or 'fallback', got '{self.on_failure}'")
        if self.on_failure == "fallback" and self.fallback is None:
            errors.append("guardrails.fallback is required when on_failure is 'fallback'")
        if self.max_output_length is not None and self.max_output_length <= 0:
            errors.append(f"guardrails.max_output_length must be positive, got {self.max_output_length}")
        return errors

    def rules(self) -> list[str]:
        """Human-readable rules appended to the system prompt."""
        rules = []
        if self.validate_as and self.validate_as != "text":
            rules.append(f"Output must be valid {self.validate_as}.")
        if self.max_output_length:
            rules.append(f"Output must be at most {self.max_output_length} characters.")
        if self.allowed_imports is not None:
            rules.append(f"Only these imports are allowed: {', '.join(self.allowed_imports) or 'none'}.")
        if self.blocked_imports:
            rules.append(f"Do not import: {', '.join(self.blocked_imports)}.")
        return rules

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GuardrailConfig":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("guardrails must be a dictionary")
        data = dict(data)
        # 'validate' would shadow the method
        if "validate" in data:
            data["validate_as"] = data.pop("validate")
        return cls(**data)


@dataclass
class ContextConfig:
    """Explicit file globs whose contents are passed verbatim to the model."""

    files: list[str] = field(default_factory=list)
    max_tokens: int | None = None
    overflow: Literal["skip", "truncate", "error"] = "truncate"

    def validate(self) -> list[str]:
        errors = []
        if self.max_tokens is not None and self.max_tokens <= 0:
            errors.append(f"context.max_tokens must be positive, got {self.max_tokens}")
        if self.overflow not in OVERFLOW_POLICIES:
            errors.append(f"context.overflow must be one of {', '.join(OVERFLOW_POLICIES)}, got '{self.overflow}'")
        return errors

    @classmethod
    def from_value(cls, value: Any) -> "ContextConfig":
        """Accept a list of globs, a single glob, or a mapping."""
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(files=[value])
        if isinstance(value, list):
            return cls(files=[str(v) for v in value])
        if isinstance(value, dict):
            return cls(**value)
        raise ValueError("context must be a glob, a list of globs, or a dictionary")


@dataclass
class Example:
    """A few-shot example shown to the model."""

    output: str
    input: str | None = None
    label: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> "Example":
        if isinstance(value, str):
            return cls(output=value)
        if isinstance(value, dict) and "output" in value:
            return cls(output=str(value["output"]), input=value.get("input"), label=value.get("label"))
        raise ValueError("Each example must be a string or a dictionary with an 'output' key")


@dataclass
class AiServiceConfig:
    """Defaults for every AI generation in a run."""

    provider: str = "litellm"
    model: str = "gpt-4o-mini"
    system_prompt: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: float = 120.0
    fallbacks: list[ModelRef] = field(default_factory=list)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    cost_table: dict[str, ModelPricing] = field(default_factory=dict)
    api_key_env: str | None = None
    api_base: str | None = None
    command: str | None = None  # Used by the 'command' provider

    @property
    def primary(self) -> ModelRef:
        return ModelRef(provider=self.provider, model=self.model)

    def validate(self) -> list[str]:
        """Validate AI service configuration."""
        errors = []
        if not self.provider:
            errors.append("ai.provider is required")
        if not self.model:
            errors.append("ai.model is required")
        if not 0.0 <= self.temperature <= 2.0:
            errors.append(f"ai.temperature must be between 0 and 2, got {self.temperature}")
        if self.max_tokens <= 0:
            errors.append(f"ai.max_tokens must be positive, got {self.max_tokens}")
        if self.timeout <= 0:
            errors.append(f"ai.timeout must be positive, got {self.timeout}")
        if self.provider == "command" and not self.command:
            errors.append("ai.command is required when provider is 'command'")
        errors.extend(self.budget.validate())
        errors.extend(self.guardrails.validate())
        return errors

    def with_overrides(self, **overrides: Any) -> "AiServiceConfig":
        """Return a copy with non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AiServiceConfig":
        """Parse the `ai:` block of a recipe or config file."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("ai config must be a dictionary")
        data = dict(data)
        provider = data.get("provider", cls.provider)
        if "fallbacks" in data:
            fallbacks = data["fallbacks"] or []
            if not isinstance(fallbacks, list):
                raise ValueError("ai.fallbacks must be a list")
            data["fallbacks"] = [ModelRef.parse(fb, provider) for fb in fallbacks]
        if "budget" in data:
            data["budget"] = BudgetConfig.from_dict(data["budget"])
        if "guardrails" in data:
            data["guardrails"] = GuardrailConfig.from_dict(data["guardrails"])
        if "cost_table" in data:
            table = data["cost_table"] or {}
            if not isinstance(table, dict):
                raise ValueError("ai.cost_table must be a dictionary")
            data["cost_table"] = {
                model: ModelPricing(float(price["input"]), float(price["output"]))
                for model, price in table.items()
            }
        return cls(**data)
