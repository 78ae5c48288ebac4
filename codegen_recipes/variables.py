"""{{variable}} substitution shared by steps and templates."""

import json
import re
from typing import Any

from .errors import TemplateRenderError

# Support multi-level access: {{a.b.c.d}}, optional inner whitespace
VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def lookup(var_ref: str, context: dict[str, Any]) -> Any:
    """Resolve a dotted reference against ``context``.

    Raises:
        TemplateRenderError if any part of the path is undefined
    """
    parts = var_ref.split(".")
    if parts[0] not in context:
        available = ", ".join(sorted(context.keys()))
        raise TemplateRenderError(f"Undefined variable: {{{{{var_ref}}}}}. Available variables: {available}")

    value = context[parts[0]]
    path_so_far = [parts[0]]
    for part in parts[1:]:
        if isinstance(value, dict):
            if part not in value:
                raise TemplateRenderError(
                    f"Undefined variable: {{{{{var_ref}}}}}. "
                    f"Key '{part}' not found. "
                    f"Available keys at '{'.'.join(path_so_far)}': {', '.join(sorted(value.keys()))}"
                )
            value = value[part]
        elif hasattr(value, part) and not part.startswith("_"):
            value = getattr(value, part)
        else:
            # Parent is a scalar (often a string from a step that didn't return JSON)
            parent_path = ".".join(path_so_far)
            raise TemplateRenderError(
                f"Cannot access '{part}' on {{{{{parent_path}}}}} - "
                f"it's a {type(value).__name__}, not a dict"
            )
        path_so_far.append(part)
    return value


def format_value(value: Any) -> str:
    """Stringify a value for interpolation.

    Dicts and lists become JSON rather than Python repr.
    """
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if value is None:
        return ""
    return str(value)


def substitute_variables(template: str, context: dict[str, Any]) -> str:
    """
    Replace {{variable}} placeholders with values from context.

    Args:
        template: String with {{variable}} placeholders
        context: Dict with variable values

    Returns:
        String with variables substituted

    Raises:
        TemplateRenderError if a variable is undefined
    """
    return VARIABLE_PATTERN.sub(lambda match: format_value(lookup(match.group(1), context)), template)


def substitute_recursive(value: Any, context: dict[str, Any]) -> Any:
    """Substitute variables in strings nested inside dicts and lists."""
    if isinstance(value, str):
        # A lone placeholder keeps the referenced value's type
        match = VARIABLE_PATTERN.fullmatch(value.strip())
        if match:
            return lookup(match.group(1), context)
        return substitute_variables(value, context)
    if isinstance(value, dict):
        return {k: substitute_recursive(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_recursive(item, context) for item in value]
    return value
