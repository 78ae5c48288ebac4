"""Model routing: provider plugin lookup and the fallback chain."""

import importlib
import logging
import threading
from collections.abc import Callable
from dataclasses import replace

from ..errors import ProviderError
from ..errors import ProviderUnavailableError
from .config import AiServiceConfig
from .config import ModelRef
from .providers import ModelRequest
from .providers import ModelResponse
from .providers import Provider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AiServiceConfig], Provider]

# name -> "module:attribute", imported on first use
BUILTIN_PROVIDERS: dict[str, str] = {
    "litellm": "codegen_recipes.ai.providers.litellm_provider:LiteLLMProvider",
    "command": "codegen_recipes.ai.providers.command:CommandProvider",
}


class ProviderRegistry:
    """Maps provider names to plugin factories.

    Entries may be import paths (``"package.module:Class"``); these are only
    imported the first time the provider is requested, so an uninstalled
    backend costs nothing until a recipe actually routes to it.
    """

    def __init__(self, include_builtins: bool = True):
        self._lock = threading.Lock()
        self._targets: dict[str, str | ProviderFactory] = dict(BUILTIN_PROVIDERS) if include_builtins else {}
        self._loaded: dict[str, ProviderFactory] = {}

    def register(self, name: str, target: str | ProviderFactory) -> None:
        with self._lock:
            self._targets[name] = target
            self._loaded.pop(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._targets)

    def is_loaded(self, name: str) -> bool:
        with self._lock:
            return name in self._loaded

    def factory(self, name: str) -> ProviderFactory:
        """Return the factory for ``name``, importing it if needed.

        Raises:
            ProviderError: If the provider is unknown or cannot be imported
        """
        with self._lock:
            if name in self._loaded:
                return self._loaded[name]
            if name not in self._targets:
                raise ProviderError(f"Unknown provider '{name}'. Registered providers: {', '.join(sorted(self._targets))}")
            target = self._targets[name]

        if isinstance(target, str):
            module_name, _, attr = target.partition(":")
            try:
                module = importlib.import_module(module_name)
                loaded = getattr(module, attr)
            except (ImportError, AttributeError) as e:
                raise ProviderError(f"Provider '{name}' could not be loaded from {target}: {e}") from e
        else:
            loaded = target

        with self._lock:
            self._loaded[name] = loaded
        logger.debug(f"Loaded provider plugin '{name}'")
        return loaded


class ModelRouter:
    """Routes requests through a chain of (provider, model) candidates.

    The chain is: the step's override (if any), the configured primary model,
    then the configured fallbacks. Each candidate is tried in order until one
    returns; ``ProviderUnavailableError`` lists every failure otherwise.
    """

    def __init__(self, config: AiServiceConfig, registry: ProviderRegistry | None = None):
        self.config = config
        self.registry = registry or ProviderRegistry()
        self._instances: dict[str, Provider] = {}
        self._lock = threading.Lock()

    def chain(self, provider: str | None = None, model: str | None = None) -> list[ModelRef]:
        candidates: list[ModelRef] = []
        if provider or model:
            candidates.append(ModelRef(provider=provider or self.config.provider, model=model or self.config.model))
        candidates.append(self.config.primary)
        candidates.extend(self.config.fallbacks)

        unique: list[ModelRef] = []
        for ref in candidates:
            if ref not in unique:
                unique.append(ref)
        return unique

    def provider(self, name: str) -> Provider:
        with self._lock:
            if name in self._instances:
                return self._instances[name]
        instance = self.registry.factory(name)(self.config)
        with self._lock:
            return self._instances.setdefault(name, instance)

    async def complete(
        self,
        request: ModelRequest,
        provider: str | None = None,
        model: str | None = None,
        before_call: Callable[[ModelRef], object] | None = None,
        on_failure: Callable[[object], None] | None = None,
    ) -> ModelResponse:
        """
        Run ``request`` against the first candidate that succeeds.

        Args:
            request: Request; its model is replaced per candidate
            provider: Step-level provider override
            model: Step-level model override
            before_call: Hook called with each candidate right before invoking
                it (used for budget checks). Exceptions it raises propagate.
            on_failure: Called with the value returned by before_call when that
                candidate fails

        Raises:
            ProviderUnavailableError: If every candidate fails
        """
        failures: list[tuple[str, str]] = []
        for ref in self.chain(provider, model):
            try:
                plugin = self.provider(ref.provider)
            except ProviderError as e:
                logger.warning(f"Provider {ref} unavailable: {e}")
                failures.append((str(ref), str(e)))
                continue

            handle = before_call(ref) if before_call is not None else None
            try:
                response = await plugin.complete(replace(request, model=ref.model))
            except Exception as e:
                if on_failure is not None:
                    on_failure(handle)
                if isinstance(e, ProviderError):
                    reason = str(e)
                else:
                    # Unmapped plugin error
                    logger.error(f"Provider plugin {ref.provider} raised {type(e).__name__}: {e}", exc_info=True)
                    reason = f"{type(e).__name__}: {e}"
                logger.warning(f"Model {ref} failed: {reason}")
                failures.append((str(ref), reason))
                continue

            if failures:
                logger.info(f"Using fallback model {ref}")
            return response

        raise ProviderUnavailableError(failures)
