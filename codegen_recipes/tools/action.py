"""Action tool and the engine-owned action table."""

import inspect
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from typing import Literal

from ..errors import ActionCollisionError
from ..errors import ActionNotFoundError
from ..models import Step
from ..output import FileOutput
from ..results import ToolOutput
from ..variables import substitute_recursive
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult

logger = logging.getLogger(__name__)

ActionFunc = Callable[..., Any]


@dataclass
class ActionDefinition:
    name: str
    func: ActionFunc
    description: str | None = None

    @property
    def parameters(self) -> list[str]:
        """Keyword parameters the action accepts (excluding the context)."""
        params = list(inspect.signature(self.func).parameters.values())[1:]
        return [p.name for p in params if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)]

    @property
    def accepts_any(self) -> bool:
        return any(p.kind == p.VAR_KEYWORD for p in inspect.signature(self.func).parameters.values())


class ActionRegistry:
    """Named Python callables that ``action`` steps can invoke.

    Each engine owns one table. Actions are called as
    ``func(context, **params)`` and may be sync or async.

    Registering a name twice is handled by ``collision_policy``: ``"warn"``
    logs and keeps the newer action, ``"error"`` raises.
    """

    def __init__(self, collision_policy: Literal["warn", "error"] = "warn"):
        if collision_policy not in ("warn", "error"):
            raise ValueError(f"collision_policy must be 'warn' or 'error', got '{collision_policy}'")
        self.collision_policy = collision_policy
        self._lock = threading.Lock()
        self._actions: dict[str, ActionDefinition] = {}

    def register(self, name: str, func: ActionFunc, description: str | None = None) -> None:
        with self._lock:
            if name in self._actions:
                if self.collision_policy == "error":
                    raise ActionCollisionError(f"Action '{name}' is already registered")
                logger.warning(f"Action '{name}' is already registered; replacing it")
            self._actions[name] = ActionDefinition(name, func, description or inspect.getdoc(func))

    def action(self, name: str | None = None, description: str | None = None) -> Callable[[ActionFunc], ActionFunc]:
        """Decorator form of ``register``."""

        def decorator(func: ActionFunc) -> ActionFunc:
            self.register(name or func.__name__, func, description)
            return func

        return decorator

    def get(self, name: str) -> ActionDefinition:
        with self._lock:
            if name not in self._actions:
                raise ActionNotFoundError(name, list(self._actions))
            return self._actions[name]

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._actions)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._actions


def _to_tool_output(result: Any) -> ToolOutput:
    if isinstance(result, ToolOutput):
        return result
    if isinstance(result, FileOutput):
        return ToolOutput(files=[result])
    if isinstance(result, list) and result and all(isinstance(r, FileOutput) for r in result):
        return ToolOutput(files=list(result))
    return ToolOutput(value=result)


class ActionTool(Tool):
    """Runs a registered action with the step's ``params``."""

    tool_type = "action"

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        result = ToolValidationResult()
        if not step.action:
            result.errors.append(f"Step '{step.name}': action steps require 'action' field")
            return result
        try:
            definition = context.engine.actions.get(step.action)
        except ActionNotFoundError as e:
            result.errors.append(f"Step '{step.name}': {e}")
            return result
        if not definition.accepts_any:
            unknown = sorted(set(step.params) - set(definition.parameters))
            if unknown:
                result.errors.append(
                    f"Step '{step.name}': action '{step.action}' does not accept: {', '.join(unknown)}"
                )
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        definition = context.engine.actions.get(step.action or "")
        params = substitute_recursive(step.params, context.variables)
        result = definition.func(context, **params)
        if inspect.isawaitable(result):
            result = await result
        return _to_tool_output(result)
