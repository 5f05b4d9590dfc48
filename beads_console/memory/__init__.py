"""Scoped project memory: storage, retrieval and brief assembly."""

from .actions import (
    action_stats,
    format_action_for_chat,
    format_action_summary,
    mark_action_sent_to_chat,
    recent_action_reports,
    run_action,
)
from .retrieval import (
    MemoryBrief,
    MemoryQuery,
    RankedMemory,
    ScopedMemories,
    build_memory_brief,
    generate_memory_brief,
    get_scoped_memories,
    rank_memories,
    score_memory,
)
from .store import MemoryStore

__all__ = [
    "MemoryBrief",
    "MemoryQuery",
    "MemoryStore",
    "RankedMemory",
    "ScopedMemories",
    "action_stats",
    "build_memory_brief",
    "format_action_for_chat",
    "format_action_summary",
    "generate_memory_brief",
    "get_scoped_memories",
    "mark_action_sent_to_chat",
    "rank_memories",
    "recent_action_reports",
    "run_action",
    "score_memory",
]
