"""Tests for provider plugins and model routing."""

import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock
from unittest.mock import patch

import pytest

from codegen_recipes.ai.config import AiServiceConfig
from codegen_recipes.ai.config import ModelRef
from codegen_recipes.ai.providers import ModelRequest
from codegen_recipes.ai.providers.command import CommandProvider
from codegen_recipes.ai.router import ModelRouter
from codegen_recipes.ai.router import ProviderRegistry
from codegen_recipes.errors import ProviderError
from codegen_recipes.errors import ProviderUnavailableError


def request(model: str = "m") -> ModelRequest:
    return ModelRequest(model=model, system="sys", user="Write a haiku")


class TestProviderRegistry:
    def test_builtins_registered_but_not_loaded(self):
        registry = ProviderRegistry()

        assert registry.names() == ["command", "litellm"]
        assert not registry.is_loaded("command")
        assert not registry.is_loaded("litellm")

    def test_import_path_loaded_on_first_use(self):
        registry = ProviderRegistry()

        factory = registry.factory("command")

        assert factory is CommandProvider
        assert registry.is_loaded("command")
        assert not registry.is_loaded("litellm")

    def test_unknown_provider(self):
        with pytest.raises(ProviderError, match="Unknown provider 'nope'"):
            ProviderRegistry().factory("nope")

    def test_bad_import_path(self):
        registry = ProviderRegistry(include_builtins=False)
        registry.register("ghost", "codegen_recipes.no_such_module:Provider")

        with pytest.raises(ProviderError, match="could not be loaded"):
            registry.factory("ghost")

    def test_reregister_drops_loaded_factory(self):
        registry = ProviderRegistry()
        registry.factory("command")
        registry.register("command", lambda config: None)

        assert not registry.is_loaded("command")


class TestModelRouter:
    def test_chain_order_and_dedup(self):
        config = AiServiceConfig(
            provider="fake",
            model="primary",
            fallbacks=[ModelRef("fake", "primary"), ModelRef("backup", "second")],
        )
        router = ModelRouter(config, ProviderRegistry(include_builtins=False))

        assert [str(r) for r in router.chain()] == ["fake:primary", "backup:second"]
        assert [str(r) for r in router.chain(model="override")] == ["fake:override", "fake:primary", "backup:second"]

    @pytest.mark.asyncio
    async def test_fallback_chain(self, make_provider):
        config = AiServiceConfig(provider="fake", model="primary", fallbacks=[ModelRef("backup", "second")])
        broken = make_provider(error="overloaded")
        backup = make_provider(responses=["ok from backup"])
        registry = ProviderRegistry(include_builtins=False)
        registry.register("fake", lambda _c: broken)
        registry.register("backup", lambda _c: backup)
        router = ModelRouter(config, registry)
        seen = []

        response = await router.complete(request(), before_call=lambda ref: seen.append(str(ref)))

        assert response.text == "ok from backup"
        assert seen == ["fake:primary", "backup:second"]
        assert broken.requests[0].model == "primary"
        assert backup.requests[0].model == "second"

    @pytest.mark.asyncio
    async def test_unloadable_provider_skipped(self, make_provider):
        config = AiServiceConfig(provider="missing", model="a", fallbacks=[ModelRef("fake", "b")])
        provider = make_provider(responses=["fine answer"])
        registry = ProviderRegistry(include_builtins=False)
        registry.register("fake", lambda _c: provider)

        response = await ModelRouter(config, registry).complete(request())

        assert response.text == "fine answer"

    @pytest.mark.asyncio
    async def test_unexpected_plugin_error_falls_back(self, make_provider):
        config = AiServiceConfig(provider="flaky", model="a", fallbacks=[ModelRef("fake", "b")])
        flaky = make_provider()
        flaky.complete = AsyncMock(side_effect=RuntimeError("socket reset"))
        backup = make_provider(responses=["answer from backup"])
        registry = ProviderRegistry(include_builtins=False)
        registry.register("flaky", lambda _c: flaky)
        registry.register("fake", lambda _c: backup)
        released = []

        response = await ModelRouter(config, registry).complete(
            request(), before_call=lambda ref: str(ref), on_failure=released.append
        )

        assert response.text == "answer from backup"
        assert released == ["flaky:a"]

    @pytest.mark.asyncio
    async def test_unexpected_plugin_error_reported_when_chain_exhausted(self, make_provider):
        provider = make_provider()
        provider.complete = AsyncMock(side_effect=RuntimeError("socket reset"))
        registry = ProviderRegistry(include_builtins=False)
        registry.register("fake", lambda _c: provider)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await ModelRouter(AiServiceConfig(provider="fake", model="a"), registry).complete(request())

        assert exc_info.value.attempts == [("fake:a", "RuntimeError: socket reset")]

    @pytest.mark.asyncio
    async def test_all_candidates_fail(self, make_provider):
        config = AiServiceConfig(provider="fake", model="a", fallbacks=[ModelRef("fake", "b")])
        registry = ProviderRegistry(include_builtins=False)
        registry.register("fake", lambda _c: make_provider(error="boom"))

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await ModelRouter(config, registry).complete(request())

        assert exc_info.value.attempts == [("fake:a", "boom"), ("fake:b", "boom")]

    @pytest.mark.asyncio
    async def test_provider_instances_cached(self, make_provider):
        created = []

        def factory(config):
            created.append(config)
            return make_provider(config)

        registry = ProviderRegistry(include_builtins=False)
        registry.register("fake", factory)
        router = ModelRouter(AiServiceConfig(provider="fake", model="m"), registry)

        await router.complete(request())
        await router.complete(request())

        assert len(created) == 1


@pytest.mark.skipif(sys.platform == "win32", reason="Uses POSIX shell utilities")
class TestCommandProvider:
    @pytest.mark.asyncio
    async def test_prompt_sent_on_stdin(self):
        provider = CommandProvider(AiServiceConfig(provider="command", command="cat"))

        response = await provider.complete(request())

        assert response.text == "sys\n\nWrite a haiku"
        assert response.provider == "command"
        assert response.input_tokens > 0

    @pytest.mark.asyncio
    async def test_prompt_placeholder(self):
        provider = CommandProvider(AiServiceConfig(provider="command", command="echo {model}: {prompt}"))

        response = await provider.complete(ModelRequest(model="local", system="", user="it's done"))

        assert response.text == "local: it's done"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        provider = CommandProvider(AiServiceConfig(provider="command", command="echo nope >&2; exit 3"))

        with pytest.raises(ProviderError, match="exit code 3") as exc_info:
            await provider.complete(request())
        assert "stderr: nope" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self):
        provider = CommandProvider(AiServiceConfig(provider="command", command="sleep 5"))

        with pytest.raises(ProviderError, match="timed out"):
            await provider.complete(ModelRequest(model="m", system="", user="x", timeout=0.1))


class TestLiteLLMProvider:
    @pytest.mark.asyncio
    async def test_completion_mapped_to_response(self):
        from codegen_recipes.ai.providers.litellm_provider import LiteLLMProvider

        usage = SimpleNamespace(prompt_tokens=12, completion_tokens=7, model_dump=lambda: {"prompt_tokens": 12})
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="generated"))],
            usage=usage,
            model="gpt-4o-mini",
        )
        provider = LiteLLMProvider(AiServiceConfig(api_base="http://localhost:4000"))

        with patch(
            "codegen_recipes.ai.providers.litellm_provider.acompletion", AsyncMock(return_value=completion)
        ) as mock_completion:
            response = await provider.complete(request("gpt-4o-mini"))

        assert response.text == "generated"
        assert (response.input_tokens, response.output_tokens) == (12, 7)
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "Write a haiku"},
        ]
        assert kwargs["api_base"] == "http://localhost:4000"

    @pytest.mark.asyncio
    async def test_errors_become_provider_errors(self):
        from codegen_recipes.ai.providers.litellm_provider import LiteLLMProvider

        provider = LiteLLMProvider(AiServiceConfig())
        with patch(
            "codegen_recipes.ai.providers.litellm_provider.acompletion",
            AsyncMock(side_effect=RuntimeError("rate limit")),
        ):
            with pytest.raises(ProviderError, match="rate limit"):
                await provider.complete(request())

    def test_missing_api_key_env(self, monkeypatch):
        from codegen_recipes.ai.providers.litellm_provider import LiteLLMProvider

        monkeypatch.delenv("CODEGEN_TEST_KEY", raising=False)
        provider = LiteLLMProvider(AiServiceConfig(api_key_env="CODEGEN_TEST_KEY"))

        with pytest.raises(ProviderError, match="CODEGEN_TEST_KEY is not set"):
            provider._call_params(request())
