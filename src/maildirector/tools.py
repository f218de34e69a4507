"""Summary: Tool definitions exposed to directors and agents.

Importance: One registry of tool names and schemas for the orchestrator and providers.
Alternatives: Build tool schemas inline inside each provider call.
"""

from __future__ import annotations

from typing import Any

from maildirector.models import Agent


AGENT_TOOL_PREFIX = "agent__"

WORKSPACE_TOOLS: list[dict[str, Any]] = [
    {
        "name": "workspace_add_item",
        "description": "Add an item to the shared workspace of this conversation.",
        "parameters": {
            "type": "object",
            "properties": {
                "label": {"type": "string"},
                "description": {"type": "string"},
                "mime_type": {"type": "string"},
                "encoding": {"type": "string", "enum": ["utf8", "base64", "binary"]},
                "data": {"type": "string"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
    {
        "name": "workspace_list_items",
        "description": "List the live items in the shared workspace.",
        "parameters": {"type": "object", "properties": {}},
    },
    {
        "name": "workspace_get_item",
        "description": "Get a single workspace item by id.",
        "parameters": {
            "type": "object",
            "properties": {"id": {"type": "string"}},
            "required": ["id"],
        },
    },
    {
        "name": "workspace_update_item",
        "description": "Update fields on a workspace item. Pass expected_revision to guard against concurrent edits.",
        "parameters": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "patch": {"type": "object"},
                "expected_revision": {"type": "integer"},
            },
            "required": ["id", "patch"],
        },
    },
    {
        "name": "workspace_remove_item",
        "description": "Remove a workspace item. Soft delete unless hard_delete is true.",
        "parameters": {
            "type": "object",
            "properties": {"id": {"type": "string"}, "hard_delete": {"type": "boolean"}},
            "required": ["id"],
        },
    },
]

WORKSPACE_TOOL_NAMES = frozenset(tool["name"] for tool in WORKSPACE_TOOLS)


def agent_tool(agent: Agent) -> dict[str, Any]:
    """Describe an agent as a delegation tool for its director."""

    return {
        "name": f"{AGENT_TOOL_PREFIX}{agent.id}",
        "description": f"Delegate a sub-task to the agent '{agent.name}' and receive its final answer.",
        "parameters": {
            "type": "object",
            "properties": {"task": {"type": "string"}},
            "required": ["task"],
        },
    }


def agent_id_from_tool(name: str) -> str | None:
    """Return the agent id encoded in a delegation tool name, if any."""

    if name.startswith(AGENT_TOOL_PREFIX):
        return name[len(AGENT_TOOL_PREFIX):] or None
    return None
