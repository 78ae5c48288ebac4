"""Template tool: renders a template and emits it as a file output."""

import logging
import re
from pathlib import Path

from ..errors import RecipeError
from ..models import Step
from ..output import FileOutput
from ..results import ToolOutput
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult

logger = logging.getLogger(__name__)


def file_output_for(step: Step, content: str, variables: dict) -> FileOutput:
    """Build the FileOutput for a step's output target, substituting variables in paths and anchors."""
    target = step.output_target

    def sub(value: str | None) -> str | None:
        return substitute_variables(value, variables) if value is not None else None

    return FileOutput(
        path=sub(target.to) or "",
        content=content,
        mode=target.mode,
        after=sub(target.after),
        before=sub(target.before),
        at=target.at,
        pattern=sub(target.pattern),
        overwrite=target.overwrite,
        step_name=step.name,
    )


def output_target_errors(step: Step) -> list[str]:
    errors = []
    if step.mode == "inject" and step.to and not (step.after or step.before or step.at):
        errors.append(f"Step '{step.name}': inject mode requires 'after', 'before', or 'at'")
    if step.mode == "replace" and step.to and not step.pattern:
        errors.append(f"Step '{step.name}': replace mode requires 'pattern'")
    if step.mode != "create" and not step.to:
        errors.append(f"Step '{step.name}': mode '{step.mode}' requires 'to'")
    for key in ("after", "before", "pattern"):
        anchor = getattr(step, key)
        # Placeholders are filled in at render time
        if anchor is None or "{{" in anchor:
            continue
        try:
            re.compile(anchor)
        except re.error as e:
            errors.append(f"Step '{step.name}': {key} is not a valid regular expression: {e}")
    return errors


class TemplateTool(Tool):
    """Renders ``template`` (inline) or ``template_file`` (via the template loader).

    In the collect pass the render only registers generation blocks with the
    run's collector and produces no files. In the resolve pass generation
    blocks are replaced with their answers and the result is written to
    ``to`` according to ``mode``.
    """

    tool_type = "template"
    supports_collect = True

    def _source(self, step: Step, context: StepContext) -> tuple[str, str]:
        if step.template is not None:
            return step.template, f"{step.name}:inline"
        name = substitute_variables(step.template_file or "", context.variables)
        local = context.recipe_dir / name
        if not Path(name).is_absolute() and local.is_file():
            # Templates next to the recipe win over the loader's search paths
            return local.read_text(encoding="utf-8"), name
        return context.engine.template_loader.load(name), name

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        result = ToolValidationResult()
        if step.template is None and not step.template_file:
            result.errors.append(f"Step '{step.name}': template steps require 'template' or 'template_file'")
            return result
        if step.template is not None and step.template_file:
            result.errors.append(f"Step '{step.name}': use either 'template' or 'template_file', not both")
            return result
        result.errors.extend(output_target_errors(step))
        if not step.to and not step.output:
            result.warnings.append(f"Step '{step.name}': rendered template is neither written nor stored")

        try:
            text, source = self._source(step, context)
            context.engine.renderer.parse(text, source)
        except RecipeError as e:
            result.errors.append(f"Step '{step.name}': {e}")
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        text, source = self._source(step, context)
        renderer = context.engine.renderer

        if context.mode == "collect":
            before = len(context.collector) if context.collector is not None else 0
            renderer.render(text, context.variables, mode="collect", collector=context.collector, source=source)
            collected = (len(context.collector) if context.collector is not None else 0) - before
            return ToolOutput(messages=[f"Collected {collected} AI block(s) from {source}"])

        rendered = renderer.render(text, context.variables, mode="resolve", answers=context.answers, source=source)
        output = ToolOutput(value=rendered)
        if step.to:
            file_output = file_output_for(step, rendered, context.variables)
            output.files.append(file_output)
            output.messages.append(f"{file_output.mode}: {file_output.path}")
        return output
