"""Template loading."""

from pathlib import Path
from typing import Protocol

from ..errors import TemplateRenderError


class TemplateLoader(Protocol):
    """Supplies raw template text by name."""

    def load(self, name: str) -> str: ...


class FileSystemTemplateLoader:
    """Looks templates up in an ordered list of directories.

    Absolute names are read directly. Relative names are tried against each
    search path in order; the first existing file wins.
    """

    def __init__(self, search_paths: list[Path] | None = None):
        self.search_paths = [Path(p) for p in (search_paths or [])]

    def find(self, name: str) -> Path | None:
        candidate = Path(name)
        if candidate.is_absolute():
            return candidate if candidate.is_file() else None
        for base in self.search_paths:
            path = base / candidate
            if path.is_file():
                return path
        return None

    def load(self, name: str) -> str:
        path = self.find(name)
        if path is None:
            searched = ", ".join(str(p) for p in self.search_paths) or "no search paths"
            raise TemplateRenderError(f"Template not found: '{name}' (searched: {searched})")
        return path.read_text(encoding="utf-8")
