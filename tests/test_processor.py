"""Tests for the command-line agent processor.

subprocess.run is mocked; no external CLI is executed.
"""

from __future__ import annotations

import subprocess
from unittest.mock import Mock

import pytest

from refinery.core.errors import AgentProcessorError
from refinery.core.processor import MAX_ERROR_CHARS, CommandAgentProcessor


@pytest.fixture
def mock_run(mocker):
    return mocker.patch("refinery.core.processor.subprocess.run")


class TestCommandAgentProcessor:
    """Tests for CommandAgentProcessor.__call__."""

    def test_prompt_piped_to_command(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="# Improved\n", stderr="")
        processor = CommandAgentProcessor(["claude", "-p"], timeout=12)

        assert processor("  System.  ", "User prompt") == "# Improved"

        args, kwargs = mock_run.call_args
        assert args[0] == ["claude", "-p"]
        assert kwargs["input"] == "System.\n\nUser prompt"
        assert kwargs["timeout"] == 12
        assert kwargs["capture_output"] is True
        assert kwargs["text"] is True

    def test_ansi_codes_stripped(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="\x1b[32m# Done\x1b[0m", stderr="")
        assert CommandAgentProcessor(["ai"])("s", "u") == "# Done"

    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = Mock(returncode=2, stdout="", stderr="rate limited")
        with pytest.raises(AgentProcessorError, match="exited with code 2: rate limited"):
            CommandAgentProcessor(["ai"])("s", "u")

    def test_stderr_truncated(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="x" * (MAX_ERROR_CHARS * 2))
        with pytest.raises(AgentProcessorError) as exc_info:
            CommandAgentProcessor(["ai"])("s", "u")
        assert len(exc_info.value.message) < MAX_ERROR_CHARS + 100

    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="ai", timeout=5)
        with pytest.raises(AgentProcessorError, match="timed out after 5"):
            CommandAgentProcessor(["ai"], timeout=5)("s", "u")

    def test_command_not_found(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        with pytest.raises(AgentProcessorError, match="command not found: ai"):
            CommandAgentProcessor(["ai"])("s", "u")

    def test_empty_output(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="  \n", stderr="")
        with pytest.raises(AgentProcessorError, match="empty output"):
            CommandAgentProcessor(["ai"])("s", "u")

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            CommandAgentProcessor([])
