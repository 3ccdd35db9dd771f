"""CLI UI components for terminal-based graph and status display."""

from refinery.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "StatusTableRenderer",
    "TerminalGraphRenderer",
]
