"""codegen-recipes - Recipe-driven code generation with two-pass AI template blocks."""

from .cancellation import CancellationStatus
from .cancellation import CancellationToken
from .config import EngineConfig
from .config import load_config
from .engine import RecipeEngine
from .engine import RecursionState
from .engine import StepExecutor
from .engine import TwoPassResult
from .errors import RecipeError
from .models import Recipe
from .models import Step
from .output import FileOutput
from .output import LocalFileWriter
from .output import MemoryFileWriter
from .registry import ToolRegistry
from .registry import create_default_registry
from .results import RecipeResult
from .results import RecipeStatus
from .results import StepResult
from .results import StepStatus
from .validator import validate_recipe

__all__ = [
    "CancellationStatus",
    "CancellationToken",
    "EngineConfig",
    "FileOutput",
    "LocalFileWriter",
    "MemoryFileWriter",
    "Recipe",
    "RecipeEngine",
    "RecipeError",
    "RecipeResult",
    "RecipeStatus",
    "RecursionState",
    "Step",
    "StepExecutor",
    "StepResult",
    "StepStatus",
    "ToolRegistry",
    "TwoPassResult",
    "create_default_registry",
    "load_config",
    "validate_recipe",
]
