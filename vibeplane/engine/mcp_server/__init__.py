"""Workspace tools served to the agent over in-process MCP."""
from .server import TOOL_SCHEMAS, build_workspace_mcp_config, namespaced_tool_names
from .tools import WorkspaceTools

__all__ = [
    "TOOL_SCHEMAS",
    "WorkspaceTools",
    "build_workspace_mcp_config",
    "namespaced_tool_names",
]
