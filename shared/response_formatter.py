from __future__ import annotations

from typing import Any

from shared.models import ToolCallResult

MAX_LISTED_ITEMS = 10

_LABEL_KEYS = ("title", "name", "label")

_MUTATION_VERBS = (
    ("create", "Created"),
    ("update", "Updated"),
    ("delete", "Deleted"),
    ("archive", "Archived"),
    ("restore", "Restored"),
)


def _label(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    for key in _LABEL_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _items(data: Any) -> list[Any] | None:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("items", "results", "rows"):
            value = data.get(key)
            if isinstance(value, list):
                return value
    return None


def _noun(tool: str) -> str:
    """searchTimelineEvents -> "timeline event"."""
    base = tool
    for prefix in ("search", "get", "list"):
        if base.startswith(prefix):
            base = base[len(prefix):]
            break
    words: list[str] = []
    current = ""
    for char in base:
        if char.isupper() and current:
            words.append(current)
            current = char
        else:
            current += char
    if current:
        words.append(current)
    noun = " ".join(word.lower() for word in words) or "item"
    if noun.endswith("s") and noun != "all":
        noun = noun[:-1]
    return "result" if noun == "all" else noun


def _format_item_line(item: Any) -> str:
    if not isinstance(item, dict):
        return f"• {item}"
    label = _label(item) or str(item.get("id", "item"))
    details = [str(item[key]) for key in ("status", "priority") if item.get(key)]
    if item.get("dueDate"):
        details.append(f"due {item['dueDate']}")
    return f"• {label} ({', '.join(details)})" if details else f"• {label}"


def format_tool_result(result: ToolCallResult) -> str:
    tool = result.request.tool
    if not result.success:
        return f"{tool} failed: {result.error or 'unknown error'}"

    label = _label(result.data)
    for prefix, verb in _MUTATION_VERBS:
        if tool.startswith(prefix):
            noun = _noun(tool[len(prefix):] or "item")
            return f'{verb} {noun} "{label}".' if label else f"{verb} {noun}."

    items = _items(result.data)
    if items is not None:
        noun = _noun(tool)
        if not items:
            return f"No {noun}s found."
        lines = [f"Found {len(items)} {noun}(s):"]
        lines.extend(_format_item_line(item) for item in items[:MAX_LISTED_ITEMS])
        if len(items) > MAX_LISTED_ITEMS:
            lines.append(f"…and {len(items) - MAX_LISTED_ITEMS} more.")
        return "\n".join(lines)

    if label:
        return f'Found "{label}".'
    return f"{tool} completed."


def summarize_tool_results(results: list[ToolCallResult]) -> str:
    """Deterministic summary used when the final model turn is skipped.

    No raw JSON reaches the user.
    """
    if not results:
        return "Nothing to do."
    sections = [format_tool_result(result) for result in results]
    return "\n\n".join(section for section in sections if section).strip()


def partial_failure_note(results: list[ToolCallResult]) -> str | None:
    failed = [result for result in results if not result.success]
    if not failed:
        return None
    names = ", ".join(sorted({result.request.tool for result in failed}))
    if len(failed) == len(results):
        return f"None of the requested actions succeeded ({names})."
    return f"Some actions did not complete ({names}); the rest were applied."
