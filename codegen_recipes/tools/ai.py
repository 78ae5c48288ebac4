"""AI tool: generates content for a recipe step with a model."""

import logging

from ..ai.context import ContextCollector
from ..ai.service import GenerationRequest
from ..ai.validation import extract_json
from ..errors import StepExecutionError
from ..models import Step
from ..results import ToolOutput
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult
from .template import file_output_for
from .template import output_target_errors

logger = logging.getLogger(__name__)


class AiTool(Tool):
    """Runs an ``ai`` step.

    Flow: collect the step's context files, render the prompt, generate
    through the run's AI service (budget gate, model routing, validation
    with retry-with-feedback), then route the text to the output target.
    """

    tool_type = "ai"

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        result = ToolValidationResult()
        if not step.prompt or not step.prompt.strip():
            result.errors.append(f"Step '{step.name}': ai steps require 'prompt' field")
        result.errors.extend(output_target_errors(step))
        result.errors.extend(f"Step '{step.name}': {e}" for e in step.context.validate())
        if step.guardrails:
            result.errors.extend(f"Step '{step.name}': {e}" for e in step.guardrails.validate())
        if step.budget:
            result.errors.extend(f"Step '{step.name}': {e}" for e in step.budget.validate())
        if step.temperature is not None and not 0.0 <= step.temperature <= 2.0:
            result.errors.append(f"Step '{step.name}': temperature must be between 0 and 2")
        if step.max_tokens is not None and step.max_tokens <= 0:
            result.errors.append(f"Step '{step.name}': max_tokens must be positive")
        if context.ai_service is None:
            result.errors.append(f"Step '{step.name}': no AI service is configured for this run")
        return result

    def build_request(self, step: Step, context: StepContext) -> GenerationRequest:
        contexts = []
        if step.context.files:
            collected = ContextCollector(context.project_root).collect(step.context)
            if collected.files:
                contexts.append(collected.render())

        guardrails = step.guardrails
        return GenerationRequest(
            key=step.name,
            prompt=substitute_variables(step.prompt or "", context.variables),
            contexts=contexts,
            examples=step.examples,
            type_hint=guardrails.validate_as if guardrails and guardrails.validate_as != "text" else None,
            system=substitute_variables(step.system, context.variables) if step.system else None,
            provider=step.provider,
            model=step.model,
            temperature=step.temperature,
            max_tokens=step.max_tokens,
            guardrails=guardrails,
            budget=step.budget,
        )

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        if context.ai_service is None:
            raise StepExecutionError(f"Step '{step.name}': no AI service is configured for this run")

        request = self.build_request(step, context)
        result = await context.ai_service.generate(request)

        # JSON output is stored parsed so later steps can reach into it
        value = extract_json(result.text) if request.type_hint == "json" else result.text
        output = ToolOutput(value=value)
        if result.used_fallback:
            output.messages.append(f"Used fallback output after {result.attempts} attempt(s): {'; '.join(result.errors)}")
        else:
            output.messages.append(f"Generated with {result.provider}:{result.model} in {result.attempts} attempt(s)")
        output.messages.extend(result.warnings)

        if step.to:
            file_output = file_output_for(step, result.text, context.variables)
            output.files.append(file_output)
            output.messages.append(f"{file_output.mode}: {file_output.path}")
        return output
