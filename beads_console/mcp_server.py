"""Project memory exposed to agents as MCP tools.

A coding agent launched by the console gets three tools over stdio:

- ``read_memory``: scoped memories for a bead, its epic and the project
- ``write_memory``: record a decision, constraint, checkpoint or note
- ``search_memory``: text search ranked by relevance

The tool bodies live on ``MemoryTools`` so they can be called without an
MCP transport; ``create_server`` only registers them on a FastMCP instance.
"""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .errors import MemoryErrorCode, MemoryStoreError
from .memory.retrieval import MemoryQuery, get_scoped_memories, rank_memories
from .memory.store import MemoryStore, clamp_limit
from .models import MemoryEntry, MemoryKind

logger = logging.getLogger(__name__)

SERVER_NAME = "beads-memory"
DEFAULT_TOOL_LIMIT = 20

INSTRUCTIONS = (
    "Project memory for the Beads issue tracker. Read memory before starting a task, "
    "and write a decision or constraint whenever you settle something the next session "
    "should know. Scope entries to the bead you are working on when you can."
)


def _kinds(kinds: Sequence[str] | None) -> list[MemoryKind] | None:
    if not kinds:
        return None
    try:
        return [MemoryKind(kind) for kind in kinds]
    except ValueError as exc:
        valid = ", ".join(kind.value for kind in MemoryKind)
        raise MemoryStoreError(
            f"Invalid kind in {list(kinds)}. Must be one of: {valid}", MemoryErrorCode.INVALID_ENTRY
        ) from exc


def _summary(entry: MemoryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "title": entry.title,
        "content": entry.content,
        "bead_id": entry.bead_id,
        "epic_id": entry.epic_id,
        "intent_anchors": entry.intent_anchors,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class MemoryTools:
    """Memory operations for one project, as the agent sees them."""

    def __init__(self, store: MemoryStore, project_id: str) -> None:
        self.store = store
        self.project_id = project_id

    async def read_memory(
        self,
        bead_id: str | None = None,
        epic_id: str | None = None,
        kinds: Sequence[str] | None = None,
        limit: int = DEFAULT_TOOL_LIMIT,
    ) -> dict[str, Any]:
        limit = clamp_limit(limit)
        scoped = await get_scoped_memories(
            self.store,
            MemoryQuery(project_id=self.project_id, bead_id=bead_id, epic_id=epic_id, kinds=_kinds(kinds), limit=limit),
        )
        memories = [*scoped.bead, *scoped.epic, *scoped.project_constraints][:limit]
        return {
            "summary": {
                "bead_memories": len(scoped.bead),
                "epic_memories": len(scoped.epic),
                "project_constraints": len(scoped.project_constraints),
                "active_constraints": len(scoped.active_constraints),
                "total_returned": len(memories),
            },
            "memories": [_summary(entry) for entry in memories],
        }

    async def write_memory(
        self,
        kind: str,
        title: str,
        content: str,
        bead_id: str | None = None,
        epic_id: str | None = None,
        intent_anchors: list[str] | None = None,
    ) -> dict[str, Any]:
        entry = await self.store.create_entry(
            project_id=self.project_id,
            kind=kind,
            title=title,
            content=content,
            bead_id=bead_id,
            epic_id=epic_id,
            intent_anchors=intent_anchors,
        )
        scope = entry.scope_label.strip("[]")
        logger.info("Agent wrote %s memory %s (%s)", entry.kind, entry.id, scope)
        return {
            "success": True,
            "id": entry.id,
            "message": f"Memory entry created with ID: {entry.id}",
            "scope": scope,
        }

    async def search_memory(
        self,
        query: str,
        bead_id: str | None = None,
        kinds: Sequence[str] | None = None,
        limit: int = DEFAULT_TOOL_LIMIT,
    ) -> dict[str, Any]:
        if not query or not query.strip():
            raise MemoryStoreError("Missing required field: query", MemoryErrorCode.INVALID_ENTRY)
        limit = clamp_limit(limit)
        found = await self.store.search_entries(
            self.project_id, query, bead_id=bead_id, kinds=_kinds(kinds), limit=limit
        )
        ranked = rank_memories(found, bead_id=bead_id)[:limit]
        return {
            "query": query,
            "count": len(ranked),
            "results": [{**_summary(item.entry), "relevance_score": round(item.score, 4)} for item in ranked],
        }


def create_server(store: MemoryStore, project_id: str) -> FastMCP:
    """FastMCP server with the memory tools registered."""
    tools = MemoryTools(store, project_id)
    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS)

    @mcp.tool()
    async def read_memory(
        bead_id: str | None = None,
        epic_id: str | None = None,
        kinds: list[str] | None = None,
        limit: int = DEFAULT_TOOL_LIMIT,
    ) -> str:
        """Read memories scoped to a bead, its epic and the project.

        Bead-specific memories come first, then epic-level ones, then project
        constraints. Kinds: constraint, decision, checkpoint, next_step,
        action_report, ci_note. Limit defaults to 20 (max 100).
        """
        return json.dumps(await tools.read_memory(bead_id, epic_id, kinds, limit), indent=2)

    @mcp.tool()
    async def write_memory(
        kind: str,
        title: str,
        content: str,
        bead_id: str | None = None,
        epic_id: str | None = None,
        intent_anchors: list[str] | None = None,
    ) -> str:
        """Persist a memory entry for future sessions.

        Use for decisions, constraints, checkpoints, next steps, action reports
        or CI notes. Prefer scoping to the bead you are working on.
        """
        return json.dumps(await tools.write_memory(kind, title, content, bead_id, epic_id, intent_anchors), indent=2)

    @mcp.tool()
    async def search_memory(
        query: str,
        bead_id: str | None = None,
        kinds: list[str] | None = None,
        limit: int = DEFAULT_TOOL_LIMIT,
    ) -> str:
        """Search memory titles and contents, ranked by relevance."""
        return json.dumps(await tools.search_memory(query, bead_id, kinds, limit), indent=2)

    return mcp


def memory_mcp_config(project_path: str | Path) -> dict[str, Any]:
    """``mcpServers`` entry that launches this server for a project."""
    command = shutil.which("beads-console") or "beads-console"
    return {
        "mcpServers": {
            SERVER_NAME: {
                "command": command,
                "args": ["mcp", "--project", str(Path(project_path).resolve())],
            }
        }
    }
