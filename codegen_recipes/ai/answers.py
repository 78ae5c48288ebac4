"""Answer resolution between the collect and resolve passes."""

import asyncio
import json
import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from ..errors import ConfigError
from ..errors import RecipeError
from .collector import AiBlockEntry
from .collector import AiCollector
from .service import AiService
from .service import GenerationRequest
from .service import GenerationResult

logger = logging.getLogger(__name__)

AnswerMap = dict[str, str]


@dataclass
class AnswerResolution:
    """Answers for every entry that could be generated, plus per-key failures."""

    answers: AnswerMap = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    results: dict[str, GenerationResult] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures


def entry_request(entry: AiBlockEntry, global_contexts: list[str]) -> GenerationRequest:
    return GenerationRequest(
        key=entry.key,
        prompt=entry.prompt,
        contexts=[*global_contexts, *entry.contexts],
        examples=entry.examples,
        output_description=entry.output_description,
        type_hint=entry.type_hint,
    )


async def resolve_answers(collector: AiCollector, service: AiService, max_concurrency: int = 4) -> AnswerResolution:
    """
    Generate an answer for every collected entry.

    A failing entry is recorded in ``failures`` and left out of the answer
    map (it renders empty in the resolve pass); other entries still run.

    Args:
        collector: Collector filled by the collect pass
        service: AI service used for generation
        max_concurrency: Maximum concurrent generations

    Returns:
        AnswerResolution with answers and failures keyed by entry key
    """
    resolution = AnswerResolution()
    entries = collector.entries
    if not entries:
        return resolution

    global_contexts = collector.global_contexts
    semaphore = asyncio.Semaphore(max_concurrency)

    async def generate(entry: AiBlockEntry) -> None:
        async with semaphore:
            try:
                result = await service.generate(entry_request(entry, global_contexts))
            except RecipeError as e:
                logger.error(f"AI block '{entry.key}' failed: {e}")
                resolution.failures[entry.key] = str(e)
                return
            except Exception as e:
                logger.error(f"AI block '{entry.key}' raised {type(e).__name__}: {e}", exc_info=True)
                resolution.failures[entry.key] = f"{type(e).__name__}: {e}"
                return
        resolution.answers[entry.key] = result.text
        resolution.results[entry.key] = result

    await asyncio.gather(*(generate(entry) for entry in entries))
    logger.info(f"Resolved {len(resolution.answers)}/{len(entries)} AI blocks")
    return resolution


def load_answers(path: Path) -> AnswerMap:
    """Load an answer map from a JSON object file.

    Non-string values are serialized back to JSON text.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Answers file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Answers file is not valid JSON: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Answers file must contain a JSON object: {path}")
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in data.items()}


def save_answers(answers: AnswerMap, path: Path) -> None:
    Path(path).write_text(json.dumps(answers, indent=2) + "\n", encoding="utf-8")
