"""Recipe tool: runs another recipe as a single step."""

from pathlib import Path

from ..errors import StepExecutionError
from ..models import Recipe
from ..models import Step
from ..results import RecipeStatus
from ..results import ToolOutput
from ..variables import substitute_recursive
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult


class RecipeTool(Tool):
    """Runs the recipe at ``recipe`` (relative to the parent recipe's directory).

    The nested recipe only sees the variables passed in ``variables``; its
    outputs come back as the step value and its file outputs bubble up to
    the parent run. Depth and total step count are limited by the run's
    recursion state.
    """

    tool_type = "recipe"
    supports_collect = True

    def _resolve_path(self, step: Step, context: StepContext) -> Path:
        path = Path(substitute_variables(step.recipe or "", context.variables))
        if not path.is_absolute():
            path = context.recipe_dir / path
        return path

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        result = ToolValidationResult()
        if not step.recipe:
            result.errors.append(f"Step '{step.name}': recipe steps require 'recipe' field")
            return result
        if step.recursion:
            result.errors.extend(f"Step '{step.name}': {e}" for e in step.recursion.validate())
        if "{{" not in step.recipe and not self._resolve_path(step, context).exists():
            result.errors.append(f"Step '{step.name}': recipe file not found: {self._resolve_path(step, context)}")
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        from ..engine import RecursionState

        path = self._resolve_path(step, context)
        try:
            child = Recipe.from_yaml(path)
        except (OSError, ValueError) as e:
            raise StepExecutionError(f"Step '{step.name}': failed to load recipe {path}: {e}") from e

        state = context.recursion or RecursionState()
        child_state = state.enter_recipe(child.name, step.recursion)
        child_state.check_depth(child.name)

        variables = substitute_recursive(step.variables or {}, context.variables)
        result = await context.engine.run_nested(child, variables, context, child_state)

        if result.status in (RecipeStatus.FAILED, RecipeStatus.CANCELLED):
            details = "; ".join(
                [*result.errors, *(f"{r.step_name}: {r.error}" for r in result.failed_steps)]
            )
            raise StepExecutionError(f"Step '{step.name}': nested recipe '{child.name}' {result.status.value}: {details}")

        outputs = {s.output: result.variables[s.output] for s in child.steps if s.output and s.output in result.variables}
        messages = [f"Nested recipe '{child.name}' {result.status.value}"]
        messages.extend(f"{r.step_name}: {r.error}" for r in result.failed_steps)
        return ToolOutput(value=outputs, files=result.files, messages=messages)
