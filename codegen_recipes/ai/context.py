"""Collects explicitly listed project files as verbatim model context."""

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import StepExecutionError
from .config import ContextConfig
from .cost import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class ContextFile:
    path: str  # Relative to the project root
    content: str
    truncated: bool = False


@dataclass
class CollectedContext:
    files: list[ContextFile]
    skipped: list[str]

    @property
    def token_estimate(self) -> int:
        return sum(estimate_tokens(f.content) for f in self.files)

    def render(self) -> str:
        """Concatenate the files, each under a header naming its path."""
        sections = []
        for f in self.files:
            suffix = " (truncated)" if f.truncated else ""
            sections.append(f"### {f.path}{suffix}\n```\n{f.content.rstrip()}\n```")
        return "\n\n".join(sections)


class ContextCollector:
    """Reads files matching explicit globs under a project root.

    No analysis is performed: contents are passed through verbatim. A glob
    that matches nothing contributes nothing.
    """

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)

    def _expand(self, patterns: list[str]) -> list[Path]:
        seen: set[Path] = set()
        paths: list[Path] = []
        for pattern in patterns:
            matches = sorted(p for p in self.project_root.glob(pattern) if p.is_file())
            if not matches:
                logger.debug(f"Context glob matched no files: {pattern}")
            for path in matches:
                if path not in seen:
                    seen.add(path)
                    paths.append(path)
        return paths

    def collect(self, config: ContextConfig) -> CollectedContext:
        """Read every matched file, applying the token limit if one is set."""
        files: list[ContextFile] = []
        skipped: list[str] = []
        used = 0

        for path in self._expand(config.files):
            relative = path.relative_to(self.project_root).as_posix()
            try:
                content = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.warning(f"Skipping non-text context file: {relative}")
                skipped.append(relative)
                continue

            tokens = estimate_tokens(content)
            if config.max_tokens is not None and used + tokens > config.max_tokens:
                if config.overflow == "error":
                    raise StepExecutionError(
                        f"Context exceeds max_tokens ({config.max_tokens}) at {relative}"
                    )
                if config.overflow == "truncate" and used < config.max_tokens:
                    remaining_chars = (config.max_tokens - used) * 4
                    files.append(ContextFile(relative, content[:remaining_chars], truncated=True))
                    used = config.max_tokens
                else:
                    skipped.append(relative)
                continue

            files.append(ContextFile(relative, content))
            used += tokens

        if skipped:
            logger.info(f"Context limit reached, skipped {len(skipped)} file(s): {', '.join(skipped)}")
        return CollectedContext(files=files, skipped=skipped)
