"""Parser for generation blocks embedded in templates.

A template is plain text with ``{{ variable }}`` placeholders plus these
block tags::

    {% context %}...{% endcontext %}      top level: global context
    {% ai key="name" %}                   one generation request
      {% context %}...{% endcontext %}    context for this block only
      {% prompt %}...{% endprompt %}
      {% output type="python" %}          format description
        {% example input="..." %}...{% endexample %}
      {% endoutput %}
    {% endai %}

Parsing produces a tree of nodes; rendering walks it (see ``renderer``).
A tag alone on its line consumes that whole line, so block markup leaves no
blank lines behind.
"""

import re
from dataclasses import dataclass
from dataclasses import field

from ..errors import TemplateSyntaxError

TAG_PATTERN = re.compile(r"\{%-?\s*(\w+)((?:[^%]|%(?!\}))*?)\s*-?%\}")
ATTR_PATTERN = re.compile(r"(\w+)\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s\"']+)")

BLOCK_TAGS = ("ai", "context", "prompt", "output", "example")

# tag -> parents it may appear in (None = top level)
ALLOWED_PARENTS: dict[str, tuple[str | None, ...]] = {
    "ai": (None,),
    "context": (None, "ai"),
    "prompt": ("ai",),
    "output": ("ai",),
    "example": ("ai", "output"),
}


@dataclass
class TextNode:
    text: str
    line: int = 1


@dataclass
class BlockNode:
    """A ``{% tag %}...{% endtag %}`` block."""

    tag: str
    attrs: dict[str, str] = field(default_factory=dict)
    children: list["Node"] = field(default_factory=list)
    line: int = 1
    standalone_end: bool = False  # Closing tag consumed its own line

    def child_blocks(self, tag: str) -> list["BlockNode"]:
        return [c for c in self.children if isinstance(c, BlockNode) and c.tag == tag]


Node = TextNode | BlockNode


@dataclass
class GenerationBlock:
    """Descriptor of one ``{% ai %}`` block found during parsing."""

    key: str
    line: int
    type_hint: str | None = None


@dataclass
class ParsedTemplate:
    nodes: list[Node]
    source: str | None = None

    @property
    def generation_blocks(self) -> list[GenerationBlock]:
        return [describe_block(n) for n in self.nodes if isinstance(n, BlockNode) and n.tag == "ai"]

    @property
    def has_generation_blocks(self) -> bool:
        return any(isinstance(n, BlockNode) and n.tag in ("ai", "context") for n in self.nodes)


def block_key(node: BlockNode) -> str | None:
    """The answer key of an ai block: its own ``key`` or its output's ``key``."""
    if node.attrs.get("key"):
        return node.attrs["key"]
    for output in node.child_blocks("output"):
        if output.attrs.get("key"):
            return output.attrs["key"]
    return None


def describe_block(node: BlockNode) -> GenerationBlock:
    type_hint = node.attrs.get("type")
    for output in node.child_blocks("output"):
        type_hint = output.attrs.get("type", type_hint)
    return GenerationBlock(key=block_key(node) or "", line=node.line, type_hint=type_hint)


def parse_attrs(raw: str, tag: str, source: str | None, line: int) -> dict[str, str]:
    attrs: dict[str, str] = {}
    consumed = ATTR_PATTERN.sub("", raw).strip()
    if consumed:
        raise TemplateSyntaxError(f"Malformed attributes on '{tag}' tag: '{raw.strip()}'", source, line)
    for match in ATTR_PATTERN.finditer(raw):
        value = match.group(2)
        if value[:1] in ("'", '"'):
            value = value[1:-1]
        attrs[match.group(1)] = value
    return attrs


def _standalone_span(text: str, start: int, end: int, floor: int) -> tuple[int, int] | None:
    """Widen a tag span to its whole line when the tag is alone on it."""
    line_start = text.rfind("\n", 0, start) + 1
    if line_start < floor or text[line_start:start].strip():
        return None
    line_end = text.find("\n", end)
    tail_end = len(text) if line_end == -1 else line_end
    if text[end:tail_end].strip():
        return None
    return line_start, (len(text) if line_end == -1 else line_end + 1)


def parse_template(text: str, source: str | None = None) -> ParsedTemplate:
    """Parse template text into a node tree.

    Raises:
        TemplateSyntaxError: On unknown tags, bad nesting, unclosed blocks,
            or ai blocks without a key
    """
    root: list[Node] = []
    stack: list[BlockNode] = []
    pos = 0

    def append(node: Node) -> None:
        (stack[-1].children if stack else root).append(node)

    for match in TAG_PATTERN.finditer(text):
        tag, raw_attrs = match.group(1), match.group(2)
        line = text.count("\n", 0, match.start()) + 1
        span = _standalone_span(text, match.start(), match.end(), pos) or (match.start(), match.end())

        if span[0] > pos:
            append(TextNode(text[pos:span[0]], line=text.count("\n", 0, pos) + 1))
        pos = span[1]

        if tag.startswith("end"):
            name = tag[3:]
            if not stack or stack[-1].tag != name:
                expected = f"'end{stack[-1].tag}'" if stack else "no open block"
                raise TemplateSyntaxError(f"Unexpected '{tag}' (expected {expected})", source, line)
            closed = stack.pop()
            closed.standalone_end = span != (match.start(), match.end())
            continue

        if tag not in BLOCK_TAGS:
            raise TemplateSyntaxError(f"Unknown tag '{tag}'", source, line)

        parent = stack[-1].tag if stack else None
        if parent not in ALLOWED_PARENTS[tag]:
            where = f"inside '{parent}'" if parent else "at top level"
            raise TemplateSyntaxError(f"'{tag}' block is not allowed {where}", source, line)

        node = BlockNode(tag=tag, attrs=parse_attrs(raw_attrs, tag, source, line), line=line)
        append(node)
        stack.append(node)

    if stack:
        raise TemplateSyntaxError(f"Unclosed '{stack[-1].tag}' block", source, stack[-1].line)
    if pos < len(text):
        append(TextNode(text[pos:], line=text.count("\n", 0, pos) + 1))

    for node in root:
        if isinstance(node, BlockNode) and node.tag == "ai":
            if not block_key(node):
                raise TemplateSyntaxError("'ai' block requires a key attribute", source, node.line)
            if not node.child_blocks("prompt"):
                raise TemplateSyntaxError(f"'ai' block '{block_key(node)}' has no prompt", source, node.line)

    return ParsedTemplate(nodes=root, source=source)
