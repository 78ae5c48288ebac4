"""Collection of generation requests during the first template pass."""

import logging
import threading
from dataclasses import dataclass
from dataclasses import field

from .config import Example

logger = logging.getLogger(__name__)


@dataclass
class AiBlockEntry:
    """One generation request collected from a template.

    ``key`` is the only link between the request and its answer.
    """

    key: str
    prompt: str
    contexts: list[str] = field(default_factory=list)
    output_description: str = ""
    type_hint: str | None = None
    examples: list[Example] = field(default_factory=list)
    source_file: str | None = None


class AiCollector:
    """Caller-owned accumulator for generation requests.

    One collector is created per two-pass run and handed to every render
    call of the collect pass. Mutations are lock-guarded because template
    steps may render concurrently.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, AiBlockEntry] = {}
        self._global_contexts: list[str] = []

    def add_entry(self, entry: AiBlockEntry) -> None:
        """Register an entry. A duplicate key replaces the earlier entry."""
        with self._lock:
            previous = self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry
        if previous is not None:
            logger.warning(
                f"Duplicate AI block key '{entry.key}' "
                f"({previous.source_file or 'inline'} and {entry.source_file or 'inline'}); "
                "keeping the last one"
            )

    def add_global_context(self, text: str) -> None:
        """Add context shared by every entry. Identical blocks are kept once."""
        text = text.strip()
        if not text:
            return
        with self._lock:
            if text not in self._global_contexts:
                self._global_contexts.append(text)

    @property
    def entries(self) -> list[AiBlockEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def global_contexts(self) -> list[str]:
        with self._lock:
            return list(self._global_contexts)

    def get(self, key: str) -> AiBlockEntry | None:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    @property
    def has_entries(self) -> bool:
        return len(self) > 0

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._global_contexts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
