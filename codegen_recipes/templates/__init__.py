"""Template parsing and two-pass rendering."""

from .loader import FileSystemTemplateLoader
from .loader import TemplateLoader
from .parser import GenerationBlock
from .parser import ParsedTemplate
from .parser import parse_template
from .renderer import TemplateRenderer

__all__ = [
    "FileSystemTemplateLoader",
    "GenerationBlock",
    "ParsedTemplate",
    "TemplateLoader",
    "TemplateRenderer",
    "parse_template",
]
