"""AI generation: context, prompts, routing, budgets, validation, two-pass answers."""

from .answers import AnswerMap
from .answers import AnswerResolution
from .answers import load_answers
from .answers import resolve_answers
from .answers import save_answers
from .collector import AiBlockEntry
from .collector import AiCollector
from .config import AiServiceConfig
from .config import BudgetConfig
from .config import ContextConfig
from .config import Example
from .config import GuardrailConfig
from .config import ModelRef
from .context import ContextCollector
from .cost import CostTracker
from .prompts import PromptAssembler
from .prompts import PromptPipeline
from .router import ModelRouter
from .router import ProviderRegistry
from .service import AiService
from .service import GenerationRequest
from .service import GenerationResult

__all__ = [
    "AiBlockEntry",
    "AiCollector",
    "AiService",
    "AiServiceConfig",
    "AnswerMap",
    "AnswerResolution",
    "BudgetConfig",
    "ContextCollector",
    "ContextConfig",
    "CostTracker",
    "Example",
    "GenerationRequest",
    "GenerationResult",
    "GuardrailConfig",
    "ModelRef",
    "ModelRouter",
    "PromptAssembler",
    "PromptPipeline",
    "ProviderRegistry",
    "load_answers",
    "resolve_answers",
    "save_answers",
]
