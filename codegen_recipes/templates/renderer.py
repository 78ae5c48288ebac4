"""Two-pass rendering of templates containing generation blocks.

Collect mode registers each ``{% ai %}`` block with a caller-supplied
``AiCollector`` and renders it as nothing. Resolve mode replaces each block
with its answer, or an empty string when no answer exists. Everything else
renders the same in both modes.
"""

import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Literal

from ..ai.collector import AiBlockEntry
from ..ai.collector import AiCollector
from ..ai.config import Example
from ..variables import substitute_variables
from .parser import BlockNode
from .parser import Node
from .parser import ParsedTemplate
from .parser import TextNode
from .parser import block_key
from .parser import parse_template

logger = logging.getLogger(__name__)

RenderMode = Literal["collect", "resolve"]

DEFAULT_CACHE_SIZE = 256  # Parsed templates kept per renderer


@dataclass
class _BlockFrame:
    """Working state for one ai block. Discarded when the block ends."""

    contexts: list[str] = field(default_factory=list)
    prompt: list[str] = field(default_factory=list)
    output_description: list[str] = field(default_factory=list)
    type_hint: str | None = None
    examples: list[Example] = field(default_factory=list)


class TemplateRenderer:
    """Renders parsed templates in collect or resolve mode."""

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.cache_size = cache_size
        self._cache: OrderedDict[tuple[str | None, str], ParsedTemplate] = OrderedDict()

    def parse(self, text: str, source: str | None = None) -> ParsedTemplate:
        """Parse ``text``, reusing the result of a recent parse of the same text and source."""
        cache_key = (source, hashlib.sha256(text.encode("utf-8")).hexdigest())
        parsed = self._cache.get(cache_key)
        if parsed is not None:
            self._cache.move_to_end(cache_key)
            return parsed
        parsed = parse_template(text, source=source)
        self._cache[cache_key] = parsed
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return parsed

    def render(
        self,
        template: str | ParsedTemplate,
        variables: dict[str, Any],
        mode: RenderMode = "resolve",
        collector: AiCollector | None = None,
        answers: dict[str, str] | None = None,
        source: str | None = None,
    ) -> str:
        """
        Render a template.

        Args:
            template: Template text or an already parsed template
            variables: Values for {{variable}} placeholders
            mode: "collect" (first pass) or "resolve" (second pass)
            collector: Required in collect mode; receives every ai block
            answers: Answer map used in resolve mode
            source: Template name used in diagnostics and entry metadata

        Returns:
            Rendered text
        """
        if mode not in ("collect", "resolve"):
            raise ValueError(f"Unknown render mode: {mode}")
        if mode == "collect" and collector is None:
            raise ValueError("collect mode requires a collector")

        parsed = template if isinstance(template, ParsedTemplate) else self.parse(template, source)
        source = source or parsed.source
        parts: list[str] = []
        for node in parsed.nodes:
            if isinstance(node, TextNode):
                parts.append(substitute_variables(node.text, variables))
            elif node.tag == "context":
                if mode == "collect":
                    collector.add_global_context(self._render_text(node.children, variables))  # type: ignore[union-attr]
            elif node.tag == "ai":
                if mode == "collect":
                    collector.add_entry(self._collect_block(node, variables, source))  # type: ignore[union-attr]
                else:
                    parts.append(self._resolve_block(node, answers or {}))
        return "".join(parts)

    def _render_text(self, nodes: list[Node], variables: dict[str, Any]) -> str:
        """Render the plain text of a block body, ignoring nested blocks."""
        return "".join(
            substitute_variables(n.text, variables) for n in nodes if isinstance(n, TextNode)
        ).strip()

    def _collect_block(self, node: BlockNode, variables: dict[str, Any], source: str | None) -> AiBlockEntry:
        frame = _BlockFrame(type_hint=node.attrs.get("type"))

        for child in node.children:
            if isinstance(child, TextNode):
                # Bare text inside an ai block is part of the prompt
                text = substitute_variables(child.text, variables).strip()
                if text:
                    frame.prompt.append(text)
            elif child.tag == "context":
                frame.contexts.append(self._render_text(child.children, variables))
            elif child.tag == "prompt":
                frame.prompt.append(self._render_text(child.children, variables))
            elif child.tag == "output":
                frame.type_hint = child.attrs.get("type", frame.type_hint)
                description = self._render_text(child.children, variables)
                if description:
                    frame.output_description.append(description)
                for example in child.child_blocks("example"):
                    frame.examples.append(self._example(example, variables))
            elif child.tag == "example":
                frame.examples.append(self._example(child, variables))

        return AiBlockEntry(
            key=block_key(node) or "",
            prompt="\n\n".join(p for p in frame.prompt if p),
            contexts=[c for c in frame.contexts if c],
            output_description="\n".join(frame.output_description),
            type_hint=frame.type_hint,
            examples=frame.examples,
            source_file=source,
        )

    def _example(self, node: BlockNode, variables: dict[str, Any]) -> Example:
        input_text = node.attrs.get("input")
        return Example(
            output=self._render_text(node.children, variables),
            input=substitute_variables(input_text, variables) if input_text else None,
            label=node.attrs.get("label"),
        )

    def _resolve_block(self, node: BlockNode, answers: dict[str, str]) -> str:
        key = block_key(node) or ""
        answer = answers.get(key)
        if answer is None:
            logger.debug(f"No answer for AI block '{key}', rendering empty")
            return ""
        if node.standalone_end and answer and not answer.endswith("\n"):
            return answer + "\n"
        return answer
