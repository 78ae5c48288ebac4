"""AI generation service: prompt, budget gate, model call, validation, retry."""

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from ..errors import GenerationFailedError
from ..errors import ProviderUnavailableError
from .config import AiServiceConfig
from .config import BudgetConfig
from .config import Example
from .config import GuardrailConfig
from .config import ModelRef
from .cost import CostTracker
from .cost import Reservation
from .prompts import AssembledPrompt
from .prompts import PromptParts
from .prompts import PromptPipeline
from .providers import ModelRequest
from .providers import ModelResponse
from .router import ModelRouter
from .validation import OutputValidation
from .validation import strip_code_fences
from .validation import validate_output

logger = logging.getLogger(__name__)

# Backoff between attempts after every model in the chain failed
PROVIDER_RETRY_BASE_DELAY = 1.0
PROVIDER_RETRY_MAX_DELAY = 30.0


@dataclass
class GenerationRequest:
    """Everything needed to generate one piece of output."""

    key: str
    prompt: str
    contexts: list[str] = field(default_factory=list)
    examples: list[Example] = field(default_factory=list)
    output_description: str = ""
    type_hint: str | None = None
    system: str | None = None
    provider: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    guardrails: GuardrailConfig | None = None
    budget: BudgetConfig | None = None  # Extra ceiling for this request only


@dataclass
class GenerationResult:
    key: str
    text: str
    model: str | None = None
    provider: str | None = None
    attempts: int = 0
    used_fallback: bool = False
    errors: list[str] = field(default_factory=list)  # Last validation errors when fallback was used
    warnings: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


class AiService:
    """Runs generation requests.

    Per attempt: the budget is checked and reserved, the model router tries
    its fallback chain, and the output is validated. Failed validation is
    retried up to ``guardrails.max_retries`` times, with the errors fed back
    to the model when ``guardrails.feedback`` is on. An attempt where every
    model failed uses the same retry budget, with exponential backoff before
    the next one. When retries run out the fallback text is used if
    ``on_failure`` is ``fallback``; otherwise ``GenerationFailedError`` is
    raised (``ProviderUnavailableError`` if no model ever answered).
    ``BudgetExceededError`` is raised before any call and is never retried.
    """

    def __init__(
        self,
        config: AiServiceConfig | None = None,
        router: ModelRouter | None = None,
        cost_tracker: CostTracker | None = None,
        pipeline: PromptPipeline | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or AiServiceConfig()
        self.router = router or ModelRouter(self.config)
        self.cost_tracker = cost_tracker or CostTracker(self.config.budget, self.config.cost_table)
        self.pipeline = pipeline or PromptPipeline()
        self._sleep = sleep

    def build_prompt(self, request: GenerationRequest, guardrails: GuardrailConfig) -> AssembledPrompt:
        return self.pipeline.assemble(
            PromptParts(
                prompt=request.prompt,
                contexts=request.contexts,
                examples=request.examples,
                output_description=request.output_description,
                type_hint=request.type_hint,
                global_system_prompt=self.config.system_prompt,
                step_system_prompt=request.system,
                guardrails=guardrails,
            )
        )

    def provider_retry_delay(self, attempt: int) -> float:
        """Backoff after a failed ``attempt`` (1-based) in which no model answered."""
        return min(PROVIDER_RETRY_BASE_DELAY * 2 ** (attempt - 1), PROVIDER_RETRY_MAX_DELAY)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Generate output for one request.

        Raises:
            BudgetExceededError: If a call would exceed a ceiling
            ProviderUnavailableError: If no model in the chain answered on the last attempt
            GenerationFailedError: If output never validated and no fallback is configured
        """
        guardrails = request.guardrails or self.config.guardrails
        trackers = [self.cost_tracker]
        if request.budget is not None:
            trackers.append(CostTracker(request.budget, self.config.cost_table))

        prompt = self.build_prompt(request, guardrails)
        current = prompt
        max_attempts = guardrails.max_retries + 1
        validation = OutputValidation()
        warnings: list[str] = []

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._invoke(request, current, trackers, attempt)
            except ProviderUnavailableError as e:
                if attempt == max_attempts:
                    raise
                delay = self.provider_retry_delay(attempt)
                logger.warning(
                    f"No model answered for '{request.key}' (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay}s: {e}"
                )
                await self._sleep(delay)
                continue

            text = strip_code_fences(response.text)
            validation = validate_output(text, guardrails, request.type_hint)
            warnings.extend(validation.warnings)

            if validation.passed:
                return GenerationResult(
                    key=request.key,
                    text=text,
                    model=response.model,
                    provider=response.provider,
                    attempts=attempt,
                    warnings=warnings,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                )

            logger.warning(
                f"Output for '{request.key}' failed validation (attempt {attempt}/{max_attempts}): "
                f"{'; '.join(validation.errors)}"
            )
            if attempt < max_attempts:
                if guardrails.feedback:
                    current = self.pipeline.with_feedback(prompt, text, validation.feedback())
                else:
                    current = prompt

        if guardrails.on_failure == "fallback" and guardrails.fallback is not None:
            logger.warning(f"Using fallback output for '{request.key}' after {max_attempts} attempt(s)")
            return GenerationResult(
                key=request.key,
                text=guardrails.fallback,
                attempts=max_attempts,
                used_fallback=True,
                errors=list(validation.errors),
                warnings=warnings,
            )
        raise GenerationFailedError(request.key, validation.errors, max_attempts)

    async def _invoke(
        self,
        request: GenerationRequest,
        prompt: AssembledPrompt,
        trackers: list[CostTracker],
        attempt: int,
    ) -> ModelResponse:
        input_tokens = prompt.estimated_tokens
        max_tokens = request.max_tokens or self.config.max_tokens
        pending: list[tuple[CostTracker, Reservation]] = []
        routed: list[str] = []

        def release(_handle: object = None) -> None:
            while pending:
                tracker, reservation = pending.pop()
                tracker.release(reservation)

        def reserve(ref: ModelRef) -> object:
            release()
            routed.append(ref.model)
            try:
                # Every token ceiling before any cost ceiling
                for tracker in trackers:
                    tracker.check_tokens(input_tokens, max_tokens)
                for tracker in trackers:
                    pending.append((tracker, tracker.check_and_reserve(ref.model, input_tokens, max_tokens)))
            except Exception:
                release()
                raise
            return None

        model_request = ModelRequest(
            model=request.model or self.config.model,
            system=prompt.system,
            user=prompt.user,
            temperature=request.temperature if request.temperature is not None else self.config.temperature,
            max_tokens=max_tokens,
            timeout=self.config.timeout,
        )
        try:
            response = await self.router.complete(
                model_request,
                provider=request.provider,
                model=request.model,
                before_call=reserve,
                on_failure=release,
            )
        except BaseException:
            release()
            raise

        for tracker, reservation in pending:
            tracker.settle(
                reservation,
                name=request.key,
                model=routed[-1] if routed else response.model,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                retry_attempts=attempt - 1,
            )
        pending.clear()
        return response
