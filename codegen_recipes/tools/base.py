"""Tool interface and the per-step execution context."""

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import Literal

from ..ai.collector import AiCollector
from ..ai.service import AiService
from ..cancellation import CancellationToken
from ..models import Recipe
from ..models import Step
from ..results import StepResult
from ..results import ToolOutput

if TYPE_CHECKING:
    from ..engine import RecipeEngine
    from ..engine import RecursionState

GenerationMode = Literal["collect", "resolve"]


@dataclass
class ToolValidationResult:
    """Outcome of ``Tool.validate``."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class StepContext:
    """What a tool can see while running a step.

    ``variables`` is a snapshot taken when the step starts; tools return
    values instead of writing to it.
    """

    engine: "RecipeEngine"
    recipe: Recipe
    variables: dict[str, Any]
    project_root: Path
    step_results: dict[str, StepResult] = field(default_factory=dict)
    mode: GenerationMode = "resolve"
    collector: AiCollector | None = None
    answers: dict[str, str] = field(default_factory=dict)
    ai_service: AiService | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    recursion: "RecursionState | None" = None

    @property
    def recipe_dir(self) -> Path:
        if self.recipe.path is not None:
            return self.recipe.path.parent
        return self.project_root


class Tool(ABC):
    """A unit of work selected by a step's ``tool`` tag."""

    tool_type: str = ""
    # Tools that can run during the collect pass without side effects
    supports_collect: bool = False

    @abstractmethod
    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        """Check that ``step`` is runnable. Called once per step, before any attempt."""

    @abstractmethod
    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        """Run the step. Raise on failure; the executor records it."""
