"""Agent execution backends."""

from ralph_loop.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from ralph_loop.backend.cli_backend import (
    DEFAULT_TOOLS,
    AgentRunError,
    CliAgentBackend,
    ToolSpec,
    UnknownToolError,
    build_tool_table,
)

__all__ = [
    "DEFAULT_TOOLS",
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
    "ToolSpec",
    "UnknownToolError",
    "build_tool_table",
]
