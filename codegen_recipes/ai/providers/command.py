"""Command provider: pipes the prompt to a local CLI and reads the answer from stdout."""

import asyncio
import logging
import shlex

from ...errors import ProviderError
from ..cost import estimate_tokens
from . import ModelRequest
from . import ModelResponse
from . import Provider

logger = logging.getLogger(__name__)


class CommandProvider(Provider):
    """Runs ``config.command`` once per request.

    If the command contains ``{prompt}`` the shell-quoted prompt is substituted
    into it; otherwise the prompt is written to the process's stdin.
    ``{model}`` is substituted with the requested model name.
    """

    name = "command"

    def _prompt_text(self, request: ModelRequest) -> str:
        if request.system:
            return f"{request.system}\n\n{request.user}"
        return request.user

    async def complete(self, request: ModelRequest) -> ModelResponse:
        if not self.config.command:
            raise ProviderError("command provider requires ai.command to be set")

        prompt = self._prompt_text(request)
        command = self.config.command.replace("{model}", shlex.quote(request.model))
        stdin_data: bytes | None = prompt.encode("utf-8")
        if "{prompt}" in command:
            command = command.replace("{prompt}", shlex.quote(prompt))
            stdin_data = None

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"failed to start command: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(stdin_data),
                timeout=request.timeout,
            )
        except asyncio.TimeoutError:
            # Kill the process on timeout
            process.kill()
            await process.wait()
            raise ProviderError(f"command timed out after {request.timeout}s") from None

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        if process.returncode:
            message = f"command failed with exit code {process.returncode}"
            if stderr.strip():
                message += f"\nstderr: {stderr.strip()}"
            raise ProviderError(message)

        text = stdout.strip()
        return ModelResponse(
            text=text,
            model=request.model,
            provider=self.name,
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(text),
        )
