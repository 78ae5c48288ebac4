"""Shell tool: runs a command directly through the shell."""

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import StepExecutionError
from ..models import Step
from ..results import ToolOutput
from ..variables import substitute_variables
from .base import StepContext
from .base import Tool
from .base import ToolValidationResult


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    exit_code: int


def parse_stdout(stdout: str) -> object:
    """Return parsed JSON when stdout is clean JSON, otherwise the stripped text."""
    stripped = stdout.strip()
    if stripped[:1] in ("{", "["):
        try:
            return json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            pass
    return stripped


class ShellTool(Tool):
    """Runs ``command`` with optional ``cwd`` and ``env``.

    A non-zero exit code fails the step. The step value is stdout, parsed as
    JSON when the whole output is valid JSON.
    """

    tool_type = "shell"

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        result = ToolValidationResult()
        if not step.command:
            result.errors.append(f"Step '{step.name}': shell steps require 'command' field")
        elif not step.command.strip():
            result.errors.append(f"Step '{step.name}': shell command cannot be empty or whitespace")
        return result

    def _working_dir(self, step: Step, context: StepContext) -> Path:
        if not step.cwd:
            return context.project_root
        cwd = Path(substitute_variables(step.cwd, context.variables))
        if not cwd.is_absolute():
            cwd = context.project_root / cwd
        if not cwd.exists():
            raise StepExecutionError(f"Step '{step.name}': cwd does not exist: {cwd}")
        if not cwd.is_dir():
            raise StepExecutionError(f"Step '{step.name}': cwd is not a directory: {cwd}")
        return cwd

    async def run(self, step: Step, context: StepContext) -> ShellResult:
        """
        Execute the step's command.

        Raises:
            StepExecutionError: If the command cannot be started or exits non-zero
        """
        command = substitute_variables(step.command or "", context.variables)
        cwd = self._working_dir(step, context)

        env = os.environ.copy()
        if step.env:
            for key, value in step.env.items():
                env[key] = substitute_variables(str(value), context.variables)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
            )
        except OSError as e:
            raise StepExecutionError(f"Step '{step.name}': failed to execute command: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            # Timeout and cancellation both arrive here; don't leave the process behind
            process.kill()
            await process.wait()
            raise

        result = ShellResult(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            exit_code=process.returncode or 0,
        )
        if result.exit_code != 0:
            error_msg = f"Step '{step.name}': command failed with exit code {result.exit_code}"
            if result.stderr.strip():
                error_msg += f"\nstderr: {result.stderr.strip()}"
            raise StepExecutionError(error_msg)
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolOutput:
        result = await self.run(step, context)
        messages = [result.stderr.strip()] if result.stderr.strip() else []
        return ToolOutput(value=parse_stdout(result.stdout), messages=messages)
