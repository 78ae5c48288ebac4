"""Tests for the AI generation service: retries, feedback, fallbacks, budgets."""

from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest

from codegen_recipes.ai.config import AiServiceConfig
from codegen_recipes.ai.config import BudgetConfig
from codegen_recipes.ai.config import GuardrailConfig
from codegen_recipes.ai.config import ModelPricing
from codegen_recipes.ai.config import ModelRef
from codegen_recipes.ai.cost import CostTracker
from codegen_recipes.ai.service import GenerationRequest
from codegen_recipes.errors import BudgetExceededError
from codegen_recipes.errors import GenerationFailedError
from codegen_recipes.errors import ProviderUnavailableError


class TestGenerate:
    @pytest.mark.asyncio
    async def test_valid_output_returned_first_attempt(self, make_provider, make_service):
        provider = make_provider(responses=["```python\nclass UsersService:\n    pass\n```"])
        service = make_service({"fake": provider})

        result = await service.generate(
            GenerationRequest(key="body", prompt="Write it", guardrails=GuardrailConfig(validate_as="python"))
        )

        assert result.text == "class UsersService:\n    pass"
        assert result.attempts == 1
        assert not result.used_fallback
        assert result.model == "fake-model"
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_prompt_sections_sent_to_provider(self, make_provider, make_service):
        provider = make_provider()
        config = AiServiceConfig(provider="fake", model="fake-model", system_prompt="You write Python.")
        service = make_service({"fake": provider}, config=config)

        await service.generate(
            GenerationRequest(key="k", prompt="Do the thing", contexts=["Project context"], system="Be brief.")
        )

        sent = provider.requests[0]
        assert sent.system.startswith("You write Python.\n\nBe brief.")
        assert "## Context\n\nProject context" in sent.user
        assert sent.user.endswith("## Task\n\nDo the thing")


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_sends_feedback(self, make_provider, make_service):
        provider = make_provider(responses=["{not json", '{"ok": true}'])
        service = make_service({"fake": provider})

        result = await service.generate(
            GenerationRequest(key="cfg", prompt="Emit config", guardrails=GuardrailConfig(validate_as="json"))
        )

        assert result.text == '{"ok": true}'
        assert result.attempts == 2
        retry_prompt = provider.requests[1].user
        assert "## Correction Required" in retry_prompt
        assert "JSON syntax error" in retry_prompt
        assert "## Previous (Incorrect) Output\n\n```\n{not json\n```" in retry_prompt

    @pytest.mark.asyncio
    async def test_retry_without_feedback_resends_prompt(self, make_provider, make_service):
        provider = make_provider(responses=["{not json", '{"ok": true}'])
        service = make_service({"fake": provider})

        await service.generate(
            GenerationRequest(
                key="cfg", prompt="Emit config", guardrails=GuardrailConfig(validate_as="json", feedback=False)
            )
        )

        assert provider.requests[0].user == provider.requests[1].user

    @pytest.mark.asyncio
    async def test_calls_bounded_by_max_retries(self, make_provider, make_service):
        provider = make_provider(responses=["still not json"])
        service = make_service({"fake": provider})

        with pytest.raises(GenerationFailedError) as exc_info:
            await service.generate(
                GenerationRequest(key="cfg", prompt="p", guardrails=GuardrailConfig(validate_as="json", max_retries=2))
            )

        assert len(provider.requests) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.key == "cfg"

    @pytest.mark.asyncio
    async def test_fallback_used_when_retries_exhausted(self, make_provider, make_service):
        provider = make_provider(responses=["still not json"])
        service = make_service({"fake": provider})
        guardrails = GuardrailConfig(validate_as="json", max_retries=1, on_failure="fallback", fallback="{}")

        result = await service.generate(GenerationRequest(key="cfg", prompt="p", guardrails=guardrails))

        assert result.text == "{}"
        assert result.used_fallback
        assert result.attempts == 2
        assert "JSON syntax error" in result.errors[0]

    @pytest.mark.asyncio
    async def test_every_attempt_recorded_in_cost_tracker(self, make_provider, make_service):
        provider = make_provider(responses=["bad", '{"ok": 1}'])
        tracker = CostTracker()
        service = make_service({"fake": provider}, tracker=tracker)

        await service.generate(GenerationRequest(key="cfg", prompt="p", guardrails=GuardrailConfig(validate_as="json")))

        assert [r.retry_attempts for r in tracker.records] == [0, 1]
        assert tracker.total_tokens == 300

    @pytest.mark.asyncio
    async def test_transient_provider_error_retried(self, make_provider, make_service):
        provider = make_provider(responses=["generated output here"], error="503 transient", fail_times=1)
        sleep = AsyncMock()
        tracker = CostTracker()
        service = make_service({"fake": provider}, tracker=tracker, sleep=sleep)

        result = await service.generate(GenerationRequest(key="k", prompt="p", guardrails=GuardrailConfig(max_retries=2)))

        assert result.text == "generated output here"
        assert result.attempts == 2
        assert len(provider.requests) == 2
        sleep.assert_awaited_once_with(1.0)
        assert tracker.reserved_tokens == 0
        assert [r.retry_attempts for r in tracker.records] == [1]

    @pytest.mark.asyncio
    async def test_provider_errors_share_retry_budget(self, make_provider, make_service):
        provider = make_provider(error="503 transient")
        sleep = AsyncMock()
        service = make_service({"fake": provider}, sleep=sleep)

        with pytest.raises(ProviderUnavailableError, match="503 transient"):
            await service.generate(GenerationRequest(key="k", prompt="p", guardrails=GuardrailConfig(max_retries=2)))

        assert len(provider.requests) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert service.cost_tracker.reserved_tokens == 0

    def test_provider_retry_delay_capped(self, make_service):
        service = make_service({})

        assert [service.provider_retry_delay(n) for n in (1, 2, 3, 6, 10)] == [1.0, 2.0, 4.0, 30.0, 30.0]


class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_exceeded_before_any_call(self, make_provider, make_service):
        provider = make_provider()
        tracker = CostTracker(BudgetConfig(max_tokens=10))
        service = make_service({"fake": provider}, tracker=tracker)

        with pytest.raises(BudgetExceededError):
            await service.generate(GenerationRequest(key="k", prompt="p", max_tokens=100))

        assert provider.requests == []
        assert tracker.reserved_tokens == 0

    @pytest.mark.asyncio
    async def test_request_budget_applies_on_top_of_run_budget(self, make_provider, make_service):
        provider = make_provider()
        service = make_service({"fake": provider})

        with pytest.raises(BudgetExceededError):
            await service.generate(
                GenerationRequest(key="k", prompt="p", max_tokens=500, budget=BudgetConfig(max_tokens=100))
            )

        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_every_token_ceiling_checked_before_any_cost(self, make_provider, make_service):
        lookup = MagicMock(return_value=ModelPricing(1.0, 1.0))
        tracker = CostTracker(BudgetConfig(max_cost_usd=100.0), pricing_lookup=lookup)
        provider = make_provider()
        service = make_service({"fake": provider}, tracker=tracker)

        with pytest.raises(BudgetExceededError) as exc_info:
            await service.generate(GenerationRequest(key="k", prompt="p", budget=BudgetConfig(max_tokens=10)))

        assert exc_info.value.kind == "tokens"
        lookup.assert_not_called()
        assert provider.requests == []
        assert tracker.reserved_tokens == 0

    @pytest.mark.asyncio
    async def test_reservation_released_after_call(self, make_provider, make_service):
        tracker = CostTracker(BudgetConfig(max_tokens=100_000))
        service = make_service({"fake": make_provider()}, tracker=tracker)

        await service.generate(GenerationRequest(key="k", prompt="p"))

        assert tracker.reserved_tokens == 0
        assert tracker.total_tokens == 150


class TestFallbackModels:
    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self, make_provider, make_service):
        broken = make_provider(error="rate limited")
        backup = make_provider(responses=["backup answer text"])
        config = AiServiceConfig(provider="fake", model="fake-model", fallbacks=[ModelRef("backup", "backup-model")])
        tracker = CostTracker()
        service = make_service({"fake": broken, "backup": backup}, config=config, tracker=tracker)

        result = await service.generate(GenerationRequest(key="k", prompt="p"))

        assert result.text == "backup answer text"
        assert backup.requests[0].model == "backup-model"
        assert [r.model for r in tracker.records] == ["backup-model"]
        assert tracker.reserved_tokens == 0

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, make_provider, make_service):
        service = make_service({"fake": make_provider(error="down")})

        with pytest.raises(ProviderUnavailableError, match="fake:fake-model: down"):
            await service.generate(GenerationRequest(key="k", prompt="p"))

        assert service.cost_tracker.reserved_tokens == 0
