"""Exception types raised by the recipe engine and its tools."""


class RecipeError(Exception):
    """Base class for all recipe engine errors."""

    pass


class RecipeValidationError(RecipeError):
    """Raised when a recipe fails structural validation before execution."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Recipe validation failed:\n" + "\n".join(f"  - {e}" for e in errors))


class CircularDependencyError(RecipeValidationError):
    """Raised when step dependencies form a cycle.

    ``cycle`` lists the step names along the cycle, with the first name
    repeated at the end (e.g. ``["a", "b", "a"]``).
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__([f"Circular dependency detected: {' -> '.join(cycle)}"])


class ToolNotFoundError(RecipeError):
    """Raised when no tool is registered for a step's type tag."""

    def __init__(self, tool_type: str, category: str = "other", available: list[str] | None = None):
        self.tool_type = tool_type
        self.category = category
        self.available = available or []
        message = f"{category.capitalize()} tool not found: '{tool_type}'"
        if self.available:
            message += f". Registered tools: {', '.join(sorted(self.available))}"
        super().__init__(message)


class StepValidationError(RecipeError):
    """Raised when a tool rejects a step during validation."""

    def __init__(self, step_name: str, errors: list[str]):
        self.step_name = step_name
        self.errors = errors
        super().__init__(f"Step '{step_name}' failed validation: {'; '.join(errors)}")


class StepExecutionError(RecipeError):
    """Raised by tools when a step cannot complete."""

    pass


class RecursionLimitError(RecipeError):
    """Raised when nested recipes exceed the depth or total step limit."""

    pass


class ActionNotFoundError(RecipeError):
    """Raised when an action step names an action that is not registered."""

    def __init__(self, action: str, available: list[str] | None = None):
        self.action = action
        available_names = ", ".join(sorted(available or [])) or "none"
        super().__init__(f"Action not found: '{action}'. Available actions: {available_names}")


class ActionCollisionError(RecipeError):
    """Raised when an action name is registered twice under the 'error' policy."""

    pass


class ExpressionError(RecipeError):
    """Raised when a step condition cannot be parsed or evaluated."""

    pass


class TemplateSyntaxError(RecipeError):
    """Raised when a template contains malformed generation blocks."""

    def __init__(self, message: str, source: str | None = None, line: int | None = None):
        self.source = source
        self.line = line
        location = ""
        if source:
            location = f" in {source}"
        if line is not None:
            location += f" (line {line})"
        super().__init__(f"{message}{location}")


class TemplateRenderError(RecipeError):
    """Raised when a template cannot be rendered (e.g. undefined variable)."""

    pass


class BudgetExceededError(RecipeError):
    """Raised before a model call when the call would exceed a ceiling.

    ``kind`` is ``"tokens"`` or ``"cost"``.
    """

    def __init__(self, kind: str, requested: float, spent: float, limit: float):
        self.kind = kind
        self.requested = requested
        self.spent = spent
        self.limit = limit
        if kind == "tokens":
            detail = f"estimated {int(requested)} tokens with {int(spent)} already used exceeds limit of {int(limit)}"
        else:
            detail = f"estimated ${requested:.4f} with ${spent:.4f} already spent exceeds limit of ${limit:.4f}"
        super().__init__(f"Budget exceeded ({kind}): {detail}")


class ProviderError(RecipeError):
    """Raised by a provider when a model invocation fails."""

    pass


class ProviderUnavailableError(RecipeError):
    """Raised when no provider in the fallback chain can serve a request."""

    def __init__(self, attempts: list[tuple[str, str]]):
        self.attempts = attempts
        if attempts:
            tried = "; ".join(f"{name}: {reason}" for name, reason in attempts)
        else:
            tried = "no providers configured"
        super().__init__(f"All providers failed ({tried})")


class GenerationFailedError(RecipeError):
    """Raised when generated output still fails validation after all retries."""

    def __init__(self, key: str, errors: list[str], attempts: int):
        self.key = key
        self.errors = errors
        self.attempts = attempts
        super().__init__(
            f"Generation for '{key}' failed validation after {attempts} attempt(s): {'; '.join(errors)}"
        )


class ConfigError(RecipeError):
    """Raised when configuration cannot be loaded or is invalid."""

    pass
