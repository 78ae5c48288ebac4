"""File output descriptors and the writer collaborator that applies them."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from typing import Protocol

from .errors import StepExecutionError

logger = logging.getLogger(__name__)


@dataclass
class FileOutput:
    """A file change produced by a step.

    Tools never touch the disk themselves; they return these descriptors and
    the engine hands them to a ``FileWriter``.
    """

    path: str
    content: str
    mode: Literal["create", "inject", "replace"] = "create"
    after: str | None = None
    before: str | None = None
    at: Literal["start", "end"] | None = None
    pattern: str | None = None
    overwrite: bool = False
    step_name: str | None = None


class FileWriter(Protocol):
    """Applies file outputs. Disk I/O lives behind this interface."""

    def write(self, output: FileOutput) -> None: ...


def _ensure_newline(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def inject_content(existing: str, output: FileOutput) -> str:
    """Insert ``output.content`` into ``existing`` according to its anchors.

    Anchors are regular expressions matched per line; the first matching line
    wins. Injection is idempotent: content already present is not added again.
    """
    if output.content.strip() and output.content.strip() in existing:
        logger.debug(f"Skipping injection into {output.path}: content already present")
        return existing

    content = _ensure_newline(output.content)

    if output.at == "start":
        return content + existing
    if output.at == "end" or (output.after is None and output.before is None):
        if existing and not existing.endswith("\n"):
            existing += "\n"
        return existing + content

    anchor = output.after if output.after is not None else output.before
    regex = re.compile(anchor)  # type: ignore[arg-type]
    lines = existing.splitlines(keepends=True)
    for idx, line in enumerate(lines):
        if regex.search(line):
            if output.after is not None:
                if not line.endswith("\n"):
                    lines[idx] = line + "\n"
                lines.insert(idx + 1, content)
            else:
                lines.insert(idx, content)
            return "".join(lines)

    kind = "after" if output.after is not None else "before"
    raise StepExecutionError(f"Injection anchor not found in {output.path}: {kind} '{anchor}'")


def replace_content(existing: str, output: FileOutput) -> str:
    """Replace every match of ``output.pattern`` with ``output.content``."""
    if not output.pattern:
        raise StepExecutionError(f"Replace output for {output.path} requires a pattern")
    regex = re.compile(output.pattern, re.MULTILINE)
    if not regex.search(existing):
        raise StepExecutionError(f"Replace pattern not found in {output.path}: '{output.pattern}'")
    return regex.sub(lambda _match: output.content, existing)


def apply_output(existing: str | None, output: FileOutput) -> str:
    """Compute the new file content for ``output`` given the current content."""
    if output.mode == "create":
        if existing is not None and not output.overwrite:
            raise StepExecutionError(f"File already exists: {output.path} (set overwrite: true to replace it)")
        return output.content
    if existing is None:
        raise StepExecutionError(f"Cannot {output.mode} into missing file: {output.path}")
    if output.mode == "inject":
        return inject_content(existing, output)
    if output.mode == "replace":
        return replace_content(existing, output)
    raise StepExecutionError(f"Unknown output mode '{output.mode}' for {output.path}")


class MemoryFileWriter:
    """Keeps files in a dict. Used for previews and tests."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})

    def write(self, output: FileOutput) -> None:
        self.files[output.path] = apply_output(self.files.get(output.path), output)


class LocalFileWriter:
    """Writes outputs beneath a root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, relative: str) -> Path:
        target = (self.root / relative).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StepExecutionError(f"Output path escapes project root: {relative}")
        return target

    def write(self, output: FileOutput) -> None:
        target = self._resolve(output.path)
        existing = target.read_text(encoding="utf-8") if target.exists() else None
        content = apply_output(existing, output)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info(f"{output.mode}: {output.path}")
