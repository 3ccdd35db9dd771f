"""Agent processors: the call that turns (system prompt, user prompt) into text.

Any callable with the ``AgentProcessor`` signature can be injected into the
coordinator. ``CommandAgentProcessor`` is the reference implementation; it
pipes the prompts to an AI CLI and reads the improved document from stdout.
"""

import logging
import re
import subprocess
from collections.abc import Callable

from refinery.core.errors import AgentProcessorError

logger = logging.getLogger(__name__)

AgentProcessor = Callable[[str, str], str]

# Bound stderr kept in error messages; these end up on step records
MAX_ERROR_CHARS = 2000


class CommandAgentProcessor:
    """Runs a configured command with the combined prompt on stdin.

    Non-zero exit, timeout and empty output all raise AgentProcessorError.
    The call is blocking; the coordinator runs it in a worker thread.
    """

    ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

    def __init__(self, command: list[str], timeout: float = 300.0):
        if not command:
            raise ValueError("Processor command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def __call__(self, system_prompt: str, user_prompt: str) -> str:
        prompt = self.combine(system_prompt, user_prompt)
        try:
            result = subprocess.run(
                self.command,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise AgentProcessorError(f"Agent processor timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise AgentProcessorError(f"Agent processor command not found: {self.command[0]}") from e

        if result.returncode != 0:
            stderr = self._strip_ansi(result.stderr).strip()[:MAX_ERROR_CHARS]
            raise AgentProcessorError(
                f"Agent processor exited with code {result.returncode}: {stderr}"
            )

        output = self._strip_ansi(result.stdout).strip()
        if not output:
            raise AgentProcessorError("Agent processor returned empty output")
        logger.debug(f"Processor returned {len(output)} chars")
        return output

    @staticmethod
    def combine(system_prompt: str, user_prompt: str) -> str:
        return f"{system_prompt.strip()}\n\n{user_prompt}"

    def _strip_ansi(self, text: str) -> str:
        """Remove ANSI escape codes from output."""
        return self.ANSI_ESCAPE.sub("", text)
