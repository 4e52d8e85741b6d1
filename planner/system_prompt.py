"""System prompt assembly for model planning and the chat-command preamble."""

from __future__ import annotations

from datetime import date

from shared.models import ExecutionContext

BASE_PROMPT = """You are a workspace assistant. You manage projects, tasks, tables, docs and timeline events through tool calls.

Rules:
- Search before you update: resolve names to ids with the search tools, then act on ids.
- Only call tools that are listed. Never invent ids.
- Pass assignee NAMES to task tools; they are resolved server-side.
- Task status: "todo", "in-progress", "blocked", "done". Task priority: "low", "medium", "high", "urgent".
- Dates are YYYY-MM-DD.
- When every requested change is done, answer in one or two short sentences. Do not repeat raw JSON."""

CHAT_COMMAND_PREAMBLE = """You are answering a one-shot chat command.
Be concise: at most three short lines, no markdown headings.
Do not ask follow-up questions; act on what was given or say what is missing."""


def build_system_prompt(context: ExecutionContext, preamble: str | None = None, today: date | None = None) -> str:
    lines: list[str] = []
    if preamble:
        lines.append(preamble.strip())
        lines.append("")
    lines.append(BASE_PROMPT)
    lines.append("")
    lines.append("## Current context")
    lines.append(f"- Today: {(today or date.today()).isoformat()}")
    lines.append(f"- Workspace: {context.workspace_name or context.workspace_id}")
    if context.user_name:
        lines.append(f"- User: {context.user_name}")
    if context.current_project_id:
        lines.append(f"- Current project id: {context.current_project_id}")
    if context.current_tab_id:
        lines.append(f"- Current tab id: {context.current_tab_id}")
    if context.target_entity_id:
        lines.append(f"- Target entity id: {context.target_entity_id}")
    return "\n".join(lines)
