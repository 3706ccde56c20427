"""Per-session MCP server factory.

Each chat turn gets an in-process MCP server whose tools are bound to
that session's WorkspaceTools instance. The server is passed directly
to ClaudeAgentOptions.mcp_servers as an McpSdkServerConfig, so no
subprocess or port is involved.
"""
from __future__ import annotations

from typing import Any

from .tools import WorkspaceTools

MCP_SERVER_NAME = "workspace"

TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "name": "bash",
        "description": (
            "Execute a bash command in the working directory. Use this to run "
            "commands, check build status, run tests, etc."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The bash command to execute"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "read_file",
        "description": "Read the contents of a file at the given path.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The path to the file to read (relative to project root)",
                },
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": (
            "Write content to a file at the given path. Creates the file if it "
            "doesn't exist, overwrites if it does."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The path to the file to write (relative to project root)",
                },
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "list_files",
        "description": "List files and directories at the given path.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The path to list (relative to project root, defaults to '.')",
                },
            },
            "required": [],
        },
    },
]

WORKSPACE_TOOL_NAMES = [schema["name"] for schema in TOOL_SCHEMAS]


def namespaced_tool_names() -> list[str]:
    """Tool names as the Claude SDK references them (mcp__<server>__<tool>)."""
    return [f"mcp__{MCP_SERVER_NAME}__{name}" for name in WORKSPACE_TOOL_NAMES]


def build_workspace_mcp_config(tools: WorkspaceTools) -> dict[str, Any]:
    """Build the mcp_servers mapping for ClaudeAgentOptions."""
    from claude_agent_sdk import create_sdk_mcp_server, tool

    def _bind(schema: dict[str, Any]):
        name = schema["name"]

        @tool(name, schema["description"], schema["input_schema"])
        async def handler(args: dict[str, Any]) -> dict[str, Any]:
            return await tools.dispatch(name, args)

        return handler

    server = create_sdk_mcp_server(
        name=MCP_SERVER_NAME,
        version="1.0.0",
        tools=[_bind(schema) for schema in TOOL_SCHEMAS],
    )
    return {MCP_SERVER_NAME: server}
