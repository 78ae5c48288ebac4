"""Built-in tools."""

from .action import ActionRegistry
from .action import ActionTool
from .ai import AiTool
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult
from .recipe import RecipeTool
from .shell import ShellTool
from .template import TemplateTool

__all__ = [
    "ActionRegistry",
    "ActionTool",
    "AiTool",
    "RecipeTool",
    "ShellTool",
    "StepContext",
    "TemplateTool",
    "Tool",
    "ToolValidationResult",
]
