"""Prompt construction for task runs."""

from __future__ import annotations

from dataclasses import dataclass, field

from .beads import WorkItem
from .runs import RunMode

PRIORITY_LABELS = {0: "Critical", 1: "High", 2: "Medium", 3: "Low", 4: "Backlog"}


@dataclass
class EpicProgress:
    epic_id: str
    epic_title: str
    current_index: int
    total_tasks: int
    completed: list[WorkItem] = field(default_factory=list)
    remaining: list[WorkItem] = field(default_factory=list)


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "Unknown")


def _item_ref(item: WorkItem) -> str:
    return f"- {item.id}: {item.title} ({item.status})"


def build_task_context(item: WorkItem) -> str:
    lines = [
        "<task-context>",
        f"**Task ID:** {item.id}",
        f"**Title:** {item.title}",
        f"**Type:** {item.issue_type.capitalize()}",
        f"**Priority:** {priority_label(item.priority)}",
        f"**Status:** {item.status}",
    ]
    if item.assignee:
        lines.append(f"**Assignee:** {item.assignee}")
    lines += ["", "**Description:**", item.description or "_No description provided_"]

    if item.blockers:
        lines += ["", "**Blocked By (dependencies that must be completed first):**"]
        lines += [_item_ref(blocker) for blocker in item.blockers]
    if item.blocks:
        lines += ["", "**This task blocks:**"]
        lines += [_item_ref(blocked) for blocked in item.blocks]
    if item.parent:
        lines += ["", f"**Parent Epic:** {item.parent.id} - {item.parent.title}"]
    if item.children:
        lines += ["", "**Child Tasks:**"]
        lines += [_item_ref(child) for child in item.children]

    lines.append("</task-context>")
    return "\n".join(lines)


def build_epic_context(progress: EpicProgress) -> str:
    lines = [
        "<epic-context>",
        f'This task is part of the epic "{progress.epic_title}" ({progress.epic_id}).',
        f"Progress: Task {progress.current_index + 1} of {progress.total_tasks}",
    ]
    if progress.completed:
        lines += ["", "**Completed tasks in this epic:**"]
        lines += [f"- {task.id}: {task.title}" for task in progress.completed]
    if progress.remaining:
        lines += ["", "**Remaining tasks after this one:**"]
        lines += [f"- {task.id}: {task.title}" for task in progress.remaining]
    lines.append("</epic-context>")
    return "\n".join(lines)


def build_instructions(item: WorkItem, mode: RunMode) -> str:
    if mode == RunMode.AUTONOMOUS:
        return f"""<instructions>
Work on this task autonomously. Your goal is to complete the task as described.

**When you have completed the task:**
1. Update the issue status by running: bd update {item.id} --status=closed
2. Then respond with: "TASK_COMPLETED: {{brief summary of what was done}}"

**If you encounter a blocker that requires human input:**
Respond with: "AWAITING_INPUT: {{description of what you need}}"

**If the task cannot be completed:**
Respond with: "TASK_BLOCKED: {{reason}}"
</instructions>"""

    return f"""<instructions>
You are working on this task in guided mode. The user will direct your work.

**Guidelines:**
- Explain your approach before making changes
- Ask for confirmation on significant decisions
- Report progress regularly
- Use the beads CLI (bd) to update task status when instructed

**When the user confirms the task is complete:**
1. Update the status: bd update {item.id} --status=closed
2. Then respond with: "TASK_COMPLETED: {{brief summary of what was done}}"
</instructions>"""


def build_task_prompt(
    item: WorkItem,
    mode: RunMode,
    *,
    agent_profile: str | None = None,
    memory_brief: str | None = None,
    epic: EpicProgress | None = None,
) -> str:
    """Build the complete prompt that starts work on one work item."""
    sections: list[str] = []
    if agent_profile:
        sections.append(f"<agent-profile>\n{agent_profile}\n</agent-profile>")
    sections.append(build_task_context(item))
    if memory_brief:
        sections.append(f"<memory-context>\n{memory_brief.strip()}\n</memory-context>")
    if epic:
        sections.append(build_epic_context(epic))
    sections.append(build_instructions(item, RunMode(mode)))
    sections.append("Begin working on this task now.")
    return "\n\n".join(sections)


def build_resume_prompt(item: WorkItem, previous_context: str | None = None) -> str:
    lines = ["<resume-context>", f"Resuming work on task {item.id}: {item.title}"]
    if previous_context:
        lines += ["", "Previous context:", previous_context]
    lines += ["</resume-context>", "", "Continue working on this task. Pick up where you left off."]
    return "\n".join(lines)


def build_message_prompt(message: str, item: WorkItem | None = None) -> str:
    if item is None:
        return message
    return f"[Working on {item.id}: {item.title}]\n\n{message}"
