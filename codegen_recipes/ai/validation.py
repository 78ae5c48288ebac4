"""Validation of model output against guardrails."""

import ast
import json
import logging
import re
import sys
from dataclasses import dataclass
from dataclasses import field
from typing import Any

import yaml

from .config import GuardrailConfig

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^\s*```[\w+-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


@dataclass
class OutputValidation:
    """Result of validating one output."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    def feedback(self) -> str:
        """Message sent back to the model on retry."""
        bullet_list = "\n".join(f"- {e}" for e in self.errors)
        return (
            f"Your previous output had the following errors:\n{bullet_list}\n\n"
            "Fix these errors and regenerate. Do NOT include any explanation, only the corrected output."
        )


def strip_code_fences(output: str) -> str:
    """Remove a single markdown code fence wrapping the whole output."""
    match = _FENCE_PATTERN.match(output)
    if match:
        return match.group(1)
    return output


def extract_json(output: str) -> Any:
    """
    Aggressively extract JSON from output using multiple strategies.

    Strategies (in order):
    1. Entire string is valid JSON
    2. Extract from markdown code block (```json ... ```)
    3. Find JSON object/array embedded in text

    Args:
        output: Model output

    Returns:
        Parsed JSON object/array, or the original string if no JSON found
    """
    output_stripped = output.strip()

    if not output_stripped:
        return output

    # Strategy 1: Entire string is valid JSON
    try:
        return json.loads(output_stripped)
    except (json.JSONDecodeError, ValueError):
        pass

    # Strategy 2: Extract from markdown code block
    json_match = re.search(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", output_stripped, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group(1))
        except (json.JSONDecodeError, ValueError):
            pass

    # Strategy 3: Find JSON embedded in text
    decoder = json.JSONDecoder()
    for start_char in ["{", "["]:
        idx = output_stripped.find(start_char)
        while idx != -1:
            try:
                parsed, _ = decoder.raw_decode(output_stripped, idx)
                return parsed
            except (json.JSONDecodeError, ValueError):
                pass
            idx = output_stripped.find(start_char, idx + 1)

    # All strategies failed - return as-is
    return output


def _validate_syntax(output: str, kind: str, result: OutputValidation) -> ast.Module | None:
    if kind == "json":
        try:
            json.loads(output)
        except json.JSONDecodeError as e:
            result.errors.append(f"JSON syntax error: {e}")
    elif kind == "yaml":
        try:
            yaml.safe_load(output)
        except yaml.YAMLError as e:
            result.errors.append(f"YAML syntax error: {e}")
    elif kind == "python":
        try:
            return ast.parse(output)
        except SyntaxError as e:
            result.errors.append(f"python syntax error at line {e.lineno}: {e.msg}")
    return None


def python_imports(tree: ast.Module) -> list[str]:
    """Top-level package names imported by a module, excluding stdlib and relative imports."""
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            modules = [node.module]
        else:
            continue
        for module in modules:
            top = module.split(".")[0]
            if top not in sys.stdlib_module_names and top not in names:
                names.append(top)
    return names


def validate_output(output: str, guardrails: GuardrailConfig | None, type_hint: str | None = None) -> OutputValidation:
    """
    Validate output according to guardrail configuration.

    Args:
        output: Output with code fences already stripped
        guardrails: Guardrail settings (None means only the empty check)
        type_hint: Format hint from the request, used when guardrails name no kind

    Returns:
        OutputValidation with errors and warnings
    """
    result = OutputValidation()

    if not output.strip():
        result.errors.append("AI returned empty output")
        return result
    if len(output.strip()) < 10:
        result.warnings.append("AI output is suspiciously short")

    if guardrails is None:
        return result

    kind = guardrails.validate_as
    if kind is None and type_hint in ("json", "yaml", "python"):
        kind = type_hint

    tree = _validate_syntax(output, kind, result) if kind else None

    if guardrails.allowed_imports is not None or guardrails.blocked_imports:
        if tree is None and kind != "python":
            try:
                tree = ast.parse(output)
            except SyntaxError:
                result.warnings.append("Import checks skipped: output is not parseable Python")
        if tree is not None:
            for name in python_imports(tree):
                if name in guardrails.blocked_imports:
                    result.errors.append(f'Blocked import: "{name}" is not allowed')
                elif guardrails.allowed_imports is not None and name not in guardrails.allowed_imports:
                    result.errors.append(
                        f'Import "{name}" is not in the allowed list: {", ".join(guardrails.allowed_imports)}'
                    )

    if guardrails.max_output_length and len(output) > guardrails.max_output_length:
        result.errors.append(f"Output length ({len(output)}) exceeds maximum ({guardrails.max_output_length})")

    logger.debug(
        f"Validation {'passed' if result.passed else 'failed'}: "
        f"{len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    return result
