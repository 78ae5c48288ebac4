"""Tool registry: maps step type tags to tool instances."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .errors import ToolNotFoundError
from .tools.base import Tool

logger = logging.getLogger(__name__)

ToolFactory = Callable[[], Tool]

TOOL_CATEGORIES = ("template", "action", "other")


@dataclass
class _Registration:
    factory: ToolFactory
    category: str
    description: str | None = None


class ToolRegistry:
    """Registry of tool factories with one cached instance per type.

    Registration is additive; registering a type again replaces the earlier
    factory and drops its cached instance. All access is lock-guarded.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._registrations: dict[str, _Registration] = {}
        self._instances: dict[str, Tool] = {}

    def register(
        self,
        tool_type: str,
        factory: ToolFactory,
        category: str = "other",
        description: str | None = None,
    ) -> None:
        """
        Register a tool factory.

        Args:
            tool_type: Tag used in a step's ``tool`` field
            factory: Zero-argument callable returning a Tool (a Tool class works)
            category: "template", "action", or "other"; used in error messages
            description: Optional human-readable description
        """
        if category not in TOOL_CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(TOOL_CATEGORIES)}, got '{category}'")
        with self._lock:
            if tool_type in self._registrations:
                logger.info(f"Replacing registered tool '{tool_type}'")
            self._registrations[tool_type] = _Registration(factory, category, description)
            self._instances.pop(tool_type, None)

    def unregister(self, tool_type: str) -> None:
        with self._lock:
            self._registrations.pop(tool_type, None)
            self._instances.pop(tool_type, None)

    def is_registered(self, tool_type: str) -> bool:
        with self._lock:
            return tool_type in self._registrations

    def registered_types(self) -> list[str]:
        with self._lock:
            return sorted(self._registrations)

    def category_of(self, tool_type: str) -> str:
        with self._lock:
            registration = self._registrations.get(tool_type)
        if registration is not None:
            return registration.category
        return tool_type if tool_type in ("template", "action") else "other"

    def resolve(self, tool_type: str) -> Tool:
        """
        Return the tool for ``tool_type``, creating it on first use.

        Raises:
            ToolNotFoundError: If nothing is registered for ``tool_type``
        """
        with self._lock:
            if tool_type in self._instances:
                return self._instances[tool_type]
            registration = self._registrations.get(tool_type)
            if registration is None:
                raise ToolNotFoundError(tool_type, self.category_of(tool_type), list(self._registrations))
            tool = registration.factory()
            self._instances[tool_type] = tool
            return tool

    def reset(self) -> None:
        """Drop every registration and cached instance."""
        with self._lock:
            self._registrations.clear()
            self._instances.clear()

    def clear_cache(self) -> None:
        with self._lock:
            self._instances.clear()


def create_default_registry() -> ToolRegistry:
    """Registry with the built-in tools."""
    from .tools.action import ActionTool
    from .tools.ai import AiTool
    from .tools.recipe import RecipeTool
    from .tools.shell import ShellTool
    from .tools.template import TemplateTool

    registry = ToolRegistry()
    registry.register("template", TemplateTool, category="template", description="Render a template to a file")
    registry.register("action", ActionTool, category="action", description="Call a registered Python action")
    registry.register("shell", ShellTool, description="Run a shell command")
    registry.register("recipe", RecipeTool, description="Run a nested recipe")
    registry.register("ai", AiTool, description="Generate content with a model")
    return registry
