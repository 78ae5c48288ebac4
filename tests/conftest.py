"""Shared fixtures for codegen-recipes tests."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from codegen_recipes.ai.config import AiServiceConfig
from codegen_recipes.ai.cost import CostTracker
from codegen_recipes.ai.providers import ModelRequest
from codegen_recipes.ai.providers import ModelResponse
from codegen_recipes.ai.providers import Provider
from codegen_recipes.ai.router import ModelRouter
from codegen_recipes.ai.router import ProviderRegistry
from codegen_recipes.ai.service import AiService
from codegen_recipes.errors import ProviderError
from codegen_recipes.errors import StepExecutionError
from codegen_recipes.models import Step
from codegen_recipes.registry import ToolRegistry
from codegen_recipes.results import ToolOutput
from codegen_recipes.tools.base import StepContext
from codegen_recipes.tools.base import Tool
from codegen_recipes.tools.base import ToolValidationResult


class RecordingTool(Tool):
    """Tool that records calls and behaves according to step params.

    Params understood: ``value`` (returned value), ``delay`` (seconds),
    ``fail`` (always raise), ``fail_times`` (raise this many times first),
    ``invalid`` (fail validation).
    """

    tool_type = "record"

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.validations: list[str] = []
        self.seen_variables: dict[str, dict] = {}
        self.active = 0
        self.max_active = 0
        self._failures: dict[str, int] = {}

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        self.validations.append(step.name)
        result = ToolValidationResult()
        if step.params.get("invalid"):
            result.errors.append(f"Step '{step.name}': invalid params")
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        self.calls.append(step.name)
        self.seen_variables[step.name] = dict(context.variables)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(step.params.get("delay", 0))
        finally:
            self.active -= 1

        if step.params.get("fail"):
            raise StepExecutionError(f"{step.name} failed")
        remaining = self._failures.setdefault(step.name, step.params.get("fail_times", 0))
        if remaining:
            self._failures[step.name] = remaining - 1
            raise StepExecutionError(f"{step.name} transient failure")
        return ToolOutput(value=step.params.get("value", f"{step.name}-done"))


class ScriptedProvider(Provider):
    """Provider that replays canned responses and records requests.

    The last response repeats once the script runs out. ``error`` fails every
    call; ``fail_times`` fails only the first calls with ``error``.
    """

    name = "fake"

    def __init__(
        self,
        config: AiServiceConfig,
        responses: list[str] | None = None,
        error: str | None = None,
        fail_times: int | None = None,
    ):
        super().__init__(config)
        self.responses = list(responses or ["generated output"])
        self.error = error
        self.fail_times = fail_times
        self.requests: list[ModelRequest] = []

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self.error and (self.fail_times is None or len(self.requests) <= self.fail_times):
            raise ProviderError(self.error)
        text = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return ModelResponse(text=text, model=request.model, provider=self.name, input_tokens=100, output_tokens=50)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Temporary project directory."""
    return tmp_path


@pytest.fixture
def recording_tool() -> RecordingTool:
    return RecordingTool()


@pytest.fixture
def registry(recording_tool: RecordingTool) -> ToolRegistry:
    """Registry with only the recording tool, registered as 'record'."""
    registry = ToolRegistry()
    registry.register("record", lambda: recording_tool)
    return registry


@pytest.fixture
def ai_config() -> AiServiceConfig:
    return AiServiceConfig(provider="fake", model="fake-model")


@pytest.fixture
def make_provider():
    """Factory for scripted providers."""

    def make(
        config: AiServiceConfig | None = None,
        responses: list[str] | None = None,
        error: str | None = None,
        fail_times: int | None = None,
    ):
        return ScriptedProvider(
            config or AiServiceConfig(provider="fake", model="fake-model"), responses, error, fail_times
        )

    return make


@pytest.fixture
def make_service(ai_config: AiServiceConfig):
    """Build an AiService whose router only knows the given providers."""

    def make(
        providers: dict[str, Provider],
        config: AiServiceConfig | None = None,
        tracker: CostTracker | None = None,
        sleep=None,
    ):
        config = config or ai_config
        provider_registry = ProviderRegistry(include_builtins=False)
        for name, provider in providers.items():
            provider_registry.register(name, lambda _config, provider=provider: provider)
        return AiService(
            config,
            router=ModelRouter(config, provider_registry),
            cost_tracker=tracker,
            sleep=sleep or AsyncMock(),
        )

    return make
