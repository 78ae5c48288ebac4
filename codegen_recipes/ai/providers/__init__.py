"""Provider plugin interface.

A provider turns an assembled prompt into model output. Concrete providers
live in submodules and are imported only when the router first needs them.
"""

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from ..config import AiServiceConfig


@dataclass
class ModelRequest:
    """One model invocation."""

    model: str
    system: str
    user: str
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: float = 120.0

    @property
    def messages(self) -> list[dict[str, str]]:
        messages = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": self.user})
        return messages


@dataclass
class ModelResponse:
    """Model output plus usage."""

    text: str
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Base class for provider plugins."""

    name: str = ""

    def __init__(self, config: AiServiceConfig):
        self.config = config

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one completion. Raise ``ProviderError`` on failure."""


__all__ = ["ModelRequest", "ModelResponse", "Provider"]
