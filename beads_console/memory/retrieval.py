"""Hierarchical memory retrieval, relevance ranking and brief assembly.

Retrieval walks three scopes (bead, epic, project) plus a cross-cutting
bucket of every live constraint so hard rules are never dropped by scoping.
Ranking scores a combined candidate set; brief assembly renders the ranked
entries into markdown under a token budget for injection into prompts.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, select
from sqlalchemy.exc import SQLAlchemyError

from ..errors import MemoryStoreError, SchemaNotInitializedError
from ..models import DEFAULT_RELEVANCE_SCORE, MemoryEntry, MemoryKind
from .store import MemoryStore, clamp_limit, live_filter

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_BRIEF_TOKENS = 2000
TOKENS_PER_CHAR = 0.25
RECENCY_DECAY_DAYS = 30

BASE_WEIGHT = 0.4
RECENCY_WEIGHT = 0.3
SCOPE_WEIGHT = 0.2
KIND_WEIGHT = 0.1

SCOPE_BEAD = 1.0
SCOPE_EPIC = 0.7
SCOPE_PROJECT = 0.3

KIND_BOOST: dict[str, float] = {
    MemoryKind.CONSTRAINT: 0.3,
    MemoryKind.DECISION: 0.2,
    MemoryKind.CHECKPOINT: 0.1,
}

# Section order of the rendered brief
KIND_SECTIONS: list[tuple[MemoryKind, str]] = [
    (MemoryKind.CONSTRAINT, "Constraints"),
    (MemoryKind.DECISION, "Decisions"),
    (MemoryKind.CHECKPOINT, "Checkpoints"),
    (MemoryKind.NEXT_STEP, "Next Steps"),
    (MemoryKind.ACTION_REPORT, "Action Reports"),
    (MemoryKind.CI_NOTE, "CI Notes"),
]

BRIEF_HEADER = "## Memory Context\n\n"


@dataclass
class MemoryQuery:
    project_id: str
    bead_id: str | None = None
    epic_id: str | None = None
    kinds: Sequence[MemoryKind | str] | None = None
    limit: int | None = None
    include_expired: bool = False


@dataclass
class ScopedMemories:
    bead: list[MemoryEntry] = field(default_factory=list)
    epic: list[MemoryEntry] = field(default_factory=list)
    project_constraints: list[MemoryEntry] = field(default_factory=list)
    active_constraints: list[MemoryEntry] = field(default_factory=list)

    def combined(self) -> list[MemoryEntry]:
        """All buckets in scope order, each entry once."""
        seen: set[str] = set()
        merged: list[MemoryEntry] = []
        for bucket in (self.bead, self.epic, self.project_constraints, self.active_constraints):
            for entry in bucket:
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                merged.append(entry)
        return merged

    @property
    def total(self) -> int:
        return len(self.combined())


@dataclass
class RankedMemory:
    entry: MemoryEntry
    score: float
    breakdown: dict[str, float]


@dataclass
class MemoryBrief:
    text: str = ""
    token_estimate: int = 0
    included_count: int = 0
    truncated_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "token_estimate": self.token_estimate,
            "included_count": self.included_count,
            "truncated_count": self.truncated_count,
        }


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) * TOKENS_PER_CHAR)


# =============================================================================
# Retrieval
# =============================================================================


async def get_scoped_memories(store: MemoryStore, query: MemoryQuery, *, now: datetime | None = None) -> ScopedMemories:
    """Fetch the four retrieval buckets, each limited independently."""
    result = ScopedMemories()
    if not store.available():
        return result

    now = now or datetime.now(UTC)
    limit = clamp_limit(query.limit)
    base = [MemoryEntry.project_id == query.project_id, *live_filter(now, include_expired=query.include_expired)]
    if query.kinds:
        kind_filter = [MemoryEntry.kind.in_([MemoryKind(k).value for k in query.kinds])]
    else:
        kind_filter = []
    by_relevance = (MemoryEntry.relevance_score.desc(), MemoryEntry.created_at.desc())
    is_constraint = MemoryEntry.kind == MemoryKind.CONSTRAINT.value

    statements: dict[str, Any] = {}
    if query.bead_id:
        statements["bead"] = (
            select(MemoryEntry)
            .where(*base, *kind_filter, MemoryEntry.bead_id == query.bead_id)
            .order_by(*by_relevance)
            .limit(limit)
        )
    if query.epic_id:
        statements["epic"] = (
            select(MemoryEntry)
            .where(*base, *kind_filter, MemoryEntry.epic_id == query.epic_id, MemoryEntry.bead_id.is_(None))
            .order_by(*by_relevance)
            .limit(limit)
        )
    statements["project_constraints"] = (
        select(MemoryEntry)
        .where(*base, is_constraint, MemoryEntry.bead_id.is_(None), MemoryEntry.epic_id.is_(None))
        .order_by(*by_relevance)
        .limit(limit)
    )
    proximity = case(
        (MemoryEntry.bead_id == (query.bead_id or ""), 0),
        (MemoryEntry.epic_id == (query.epic_id or ""), 1),
        else_=2,
    )
    statements["active_constraints"] = (
        select(MemoryEntry).where(*base, is_constraint).order_by(proximity, *by_relevance).limit(limit)
    )

    async def _fetch(session: Any) -> None:
        for bucket, stmt in statements.items():
            rows = (await session.execute(stmt)).scalars().all()
            setattr(result, bucket, list(rows))

    await store._run("Scoped memory retrieval", _fetch)
    return result


# =============================================================================
# Ranking
# =============================================================================


def score_memory(
    entry: MemoryEntry,
    *,
    bead_id: str | None = None,
    epic_id: str | None = None,
    now: datetime,
) -> RankedMemory:
    base = entry.relevance_score if entry.relevance_score is not None else DEFAULT_RELEVANCE_SCORE
    created_at = entry.created_at or now
    age_days = max(0.0, (now - created_at).total_seconds() / 86400)
    recency = max(0.0, 1.0 - age_days / RECENCY_DECAY_DAYS)

    if bead_id and entry.bead_id == bead_id:
        scope = SCOPE_BEAD
    elif epic_id and entry.epic_id == epic_id:
        scope = SCOPE_EPIC
    else:
        scope = SCOPE_PROJECT

    kind_boost = KIND_BOOST.get(entry.kind, 0.0)
    breakdown = {
        "base": base * BASE_WEIGHT,
        "recency": recency * RECENCY_WEIGHT,
        "scope": scope * SCOPE_WEIGHT,
        "kind": kind_boost * KIND_WEIGHT,
    }
    return RankedMemory(entry=entry, score=sum(breakdown.values()), breakdown=breakdown)


def rank_memories(
    entries: Iterable[MemoryEntry],
    *,
    bead_id: str | None = None,
    epic_id: str | None = None,
    now: datetime | None = None,
) -> list[RankedMemory]:
    """Score and sort entries: score, then newer first, then input order."""
    now = now or datetime.now(UTC)
    ranked = [score_memory(entry, bead_id=bead_id, epic_id=epic_id, now=now) for entry in entries]
    order = {id(item): index for index, item in enumerate(ranked)}
    ranked.sort(
        key=lambda item: (
            -item.score,
            -(item.entry.created_at.timestamp() if item.entry.created_at else 0.0),
            order[id(item)],
        )
    )
    return ranked


# =============================================================================
# Brief assembly
# =============================================================================


def format_memory_entry(entry: MemoryEntry) -> str:
    date = entry.created_at.strftime("%Y-%m-%d") if entry.created_at else "unknown"
    return f"#### {entry.title} {entry.scope_label}\n**{entry.kind}** - {date}\n{entry.content}\n\n"


def _section_heading(kind: str) -> str:
    labels = {k.value: label for k, label in KIND_SECTIONS}
    label = labels.get(kind, kind)
    return f"### {label}\n\n"


def _footer(omitted: int) -> str:
    return f"_{omitted} additional memories omitted for brevity._\n"


def build_memory_brief(ranked: Sequence[RankedMemory], *, max_tokens: int = DEFAULT_MEMORY_BRIEF_TOKENS) -> MemoryBrief:
    """Render ranked memories into a markdown brief that fits ``max_tokens``.

    Entries are taken in the order given; one that would not fit is skipped
    and counted as truncated, never partially rendered. The text is built
    from pieces whose individual estimates are summed, so the estimate of
    the whole never exceeds the budget. Room for the omission footer is
    reserved up front.
    """
    if not ranked:
        return MemoryBrief()

    footer_reserve = estimate_tokens(_footer(len(ranked)))
    used = estimate_tokens(BRIEF_HEADER) + footer_reserve
    if used > max_tokens:
        return MemoryBrief(truncated_count=len(ranked))

    selected: dict[str, list[str]] = {}
    truncated = 0
    for item in ranked:
        kind = item.entry.kind
        piece = format_memory_entry(item.entry)
        cost = estimate_tokens(piece)
        if kind not in selected:
            cost += estimate_tokens(_section_heading(kind))
        if used + cost > max_tokens:
            truncated += 1
            continue
        used += cost
        selected.setdefault(kind, []).append(piece)

    included = sum(len(pieces) for pieces in selected.values())
    if not included:
        return MemoryBrief(truncated_count=truncated)

    ordered_kinds = [kind.value for kind, _ in KIND_SECTIONS if kind.value in selected]
    ordered_kinds += [kind for kind in selected if kind not in ordered_kinds]

    parts = [BRIEF_HEADER]
    for kind in ordered_kinds:
        parts.append(_section_heading(kind))
        parts.extend(selected[kind])
    if truncated:
        parts.append(_footer(truncated))
    text = "".join(parts).rstrip("\n") + "\n"

    return MemoryBrief(
        text=text,
        token_estimate=estimate_tokens(text),
        included_count=included,
        truncated_count=truncated,
    )


async def generate_memory_brief(
    store: MemoryStore,
    *,
    project_id: str,
    bead_id: str | None = None,
    epic_id: str | None = None,
    max_tokens: int = DEFAULT_MEMORY_BRIEF_TOKENS,
    limit: int | None = None,
    now: datetime | None = None,
) -> MemoryBrief:
    """Retrieve, rank and render a brief. Storage errors yield an empty brief."""
    now = now or datetime.now(UTC)
    query = MemoryQuery(project_id=project_id, bead_id=bead_id, epic_id=epic_id, limit=limit)
    try:
        scoped = await get_scoped_memories(store, query, now=now)
    except (MemoryStoreError, SchemaNotInitializedError, SQLAlchemyError, OSError) as exc:
        logger.warning("Memory retrieval failed for project %s: %s", project_id, exc)
        return MemoryBrief()

    ranked = rank_memories(scoped.combined(), bead_id=bead_id, epic_id=epic_id, now=now)
    return build_memory_brief(ranked, max_tokens=max_tokens)
