"""Prompt assembly for model calls and for externally answered requests."""

import json
import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

from .collector import AiCollector
from .config import Example
from .config import GuardrailConfig
from .cost import estimate_tokens

logger = logging.getLogger(__name__)

LARGE_PROMPT_TOKENS = 100_000


@dataclass
class AssembledPrompt:
    """System and user messages ready for a provider."""

    system: str
    user: str

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.system) + estimate_tokens(self.user)


@dataclass
class PromptParts:
    """Inputs to the prompt pipeline for one generation request."""

    prompt: str
    contexts: list[str] = field(default_factory=list)
    examples: list[Example] = field(default_factory=list)
    output_description: str = ""
    type_hint: str | None = None
    global_system_prompt: str | None = None
    step_system_prompt: str | None = None
    guardrails: GuardrailConfig | None = None


class PromptPipeline:
    """Builds the system and user messages for a generation request.

    System message: global system prompt, step system prompt, then a
    ``## Rules`` section derived from guardrails. User message: ``## Context``,
    ``## Examples`` and ``## Task`` sections.
    """

    def assemble(self, parts: PromptParts) -> AssembledPrompt:
        system = self._system_prompt(parts)
        user = self._user_prompt(parts)
        prompt = AssembledPrompt(system=system, user=user)
        logger.debug(
            f"Prompt assembled: system={len(system)} chars, user={len(user)} chars, "
            f"~{prompt.estimated_tokens} tokens"
        )
        if prompt.estimated_tokens > LARGE_PROMPT_TOKENS:
            logger.warning(f"Estimated prompt size ({prompt.estimated_tokens} tokens) is very large")
        return prompt

    def with_feedback(self, prompt: AssembledPrompt, previous_output: str, feedback: str) -> AssembledPrompt:
        """Append validation feedback and the rejected output to the user message."""
        user = (
            f"{prompt.user}\n\n## Correction Required\n\n{feedback}\n\n"
            f"## Previous (Incorrect) Output\n\n```\n{previous_output}\n```"
        )
        return replace(prompt, user=user)

    def _system_prompt(self, parts: PromptParts) -> str:
        sections = []
        if parts.global_system_prompt:
            sections.append(parts.global_system_prompt)
        if parts.step_system_prompt:
            sections.append(parts.step_system_prompt)
        rules = parts.guardrails.rules() if parts.guardrails else []
        if rules:
            sections.append("## Rules\n\n" + "\n".join(f"- {rule}" for rule in rules))
        return "\n\n".join(sections)

    def _user_prompt(self, parts: PromptParts) -> str:
        sections = []
        contexts = [c for c in parts.contexts if c.strip()]
        if contexts:
            sections.append("## Context\n\n" + "\n\n".join(contexts))

        if parts.examples:
            lines = ["## Examples"]
            for example in parts.examples:
                lines.append("")
                if example.label:
                    lines.append(f"### {example.label}\n")
                if example.input:
                    lines.append(f"**Input:**\n{example.input}\n")
                lines.append(f"**Output:**\n{example.output}")
            sections.append("\n".join(lines))

        task = parts.prompt
        if parts.output_description:
            task += f"\n\n**Expected output format:**\n{parts.output_description}"
        if parts.type_hint:
            task += f"\n\nRespond with {parts.type_hint} only, without explanation or markdown fences."
        sections.append(f"## Task\n\n{task}")
        return "\n\n".join(sections)


class PromptAssembler:
    """Renders a collector's entries as one markdown request document.

    The document is meant for an agent or human who answers every prompt
    and saves the answers as a JSON object keyed by entry key.
    """

    def assemble(self, collector: AiCollector, answers_path: str = "./ai-answers.json", command: str | None = None) -> str:
        parts: list[str] = ["# AI Generation Request\n"]
        global_contexts = collector.global_contexts
        entries = collector.entries

        if global_contexts or any(e.contexts for e in entries):
            parts.append("## Context\n")
            if global_contexts:
                parts.append("### Global Context\n")
                for ctx in global_contexts:
                    parts.append(ctx)
                    parts.append("")
            for entry in entries:
                if entry.contexts:
                    parts.append(f"### Context for `{entry.key}`\n")
                    for ctx in entry.contexts:
                        parts.append(ctx)
                        parts.append("")

        parts.append("## Prompts\n")
        for entry in entries:
            parts.append(f"### `{entry.key}`\n")
            parts.append(entry.prompt)
            parts.append("")
            if entry.output_description.strip():
                parts.append("**Expected output format:**\n")
                parts.append(entry.output_description)
                parts.append("")
            for example in entry.examples:
                parts.append(f"**Example output:**\n\n```\n{example.output}\n```\n")

        schema = {
            entry.key: "<see format above>" if entry.output_description.strip() else "<your answer>"
            for entry in entries
        }
        parts.append("## Response Format\n")
        parts.append("Respond with a JSON object:\n")
        parts.append("```json")
        parts.append(json.dumps(schema, indent=2))
        parts.append("```\n")

        parts.append("## Instructions\n")
        if command:
            parts.append("Save your response as JSON to a file and run:\n")
            parts.append("```")
            parts.append(f"{command} --answers {answers_path}")
            parts.append("```\n")
        else:
            parts.append(f"Save your response as JSON to `{answers_path}`.\n")

        document = "\n".join(parts)
        logger.debug(f"Assembled request document ({len(document)} chars, {len(entries)} entries)")
        return document
