"""LiteLLM provider: one plugin for every hosted or local model LiteLLM supports."""

import logging
import os

from litellm import acompletion

from ...errors import ProviderError
from ..cost import estimate_tokens
from . import ModelRequest
from . import ModelResponse
from . import Provider

logger = logging.getLogger(__name__)


class LiteLLMProvider(Provider):
    """Calls ``litellm.acompletion``.

    Model names are passed through unchanged (``gpt-4o-mini``,
    ``anthropic/claude-sonnet-4-5``, ``ollama/llama3``). The API key comes
    from ``api_key_env`` when configured, otherwise LiteLLM reads the
    provider's standard environment variable.
    """

    name = "litellm"

    def _call_params(self, request: ModelRequest) -> dict:
        params = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "timeout": request.timeout,
            "drop_params": True,
        }
        if self.config.api_key_env:
            api_key = os.environ.get(self.config.api_key_env)
            if not api_key:
                raise ProviderError(f"Environment variable {self.config.api_key_env} is not set")
            params["api_key"] = api_key
        if self.config.api_base:
            params["api_base"] = self.config.api_base
        return params

    async def complete(self, request: ModelRequest) -> ModelResponse:
        params = self._call_params(request)
        try:
            response = await acompletion(**params)
        except Exception as e:
            logger.error(f"Error in LiteLLM completion for {request.model}: {e}")
            raise ProviderError(f"{request.model}: {e}") from e

        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", None) or estimate_tokens(request.system + request.user)
        output_tokens = getattr(usage, "completion_tokens", None) or estimate_tokens(text)
        return ModelResponse(
            text=text,
            model=response.model or request.model,
            provider=self.name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw={"usage": usage.model_dump() if usage is not None else None},
        )
