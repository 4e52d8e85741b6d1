"""
Deterministic command patterns — simple commands resolved without the model.

Each pattern maps one regex to one tool call. Plans carry only the arguments
taken from the text; context ids (workspace, project, tab) are filled in by
the registry at execution time, so the same plan is valid for any tenant and
can be cached by normalized text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from shared.models import ToolCallRequest

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20

_POLITE_SUFFIX = re.compile(r"[\s,]+(?:pls|please|thanks|thank you|thx)[.!]*$", re.IGNORECASE)
_TRAILING_PUNCT = re.compile(r"[.!]+$")

# Multi-step commands must go through the model.
_MULTI_STEP = re.compile(r"\b(?:then|also|after that|next)\b", re.IGNORECASE)
_CHAINED_VERB = re.compile(
    r"(?:\band|,)\s+(?:assign|add|set|tag|move|delete|remove|update|rename|change|populate|fill|insert|"
    r"attach|link|copy|duplicate|archive|complete|close|open|share|export|import|mark)\b",
    re.IGNORECASE,
)

_NAMED = r"(?:called|named|titled)\s+[\"']?(?P<name>.+?)[\"']?"


@dataclass(frozen=True)
class CommandPattern:
    pattern: re.Pattern[str]
    tool: str
    build_args: Callable[[re.Match[str]], dict[str, Any]]
    description: str


def _title(match: re.Match[str]) -> dict[str, Any]:
    return {"title": match.group("name").strip()}


def _name(match: re.Match[str]) -> dict[str, Any]:
    return {"name": match.group("name").strip()}


def _table(match: re.Match[str]) -> dict[str, Any]:
    args: dict[str, Any] = {"title": match.group("name").strip()}
    columns = match.groupdict().get("columns")
    if columns:
        args["fields"] = [{"name": column, "type": "text"} for column in parse_column_list(columns)]
    return args


def _search(**extra: Any) -> Callable[[re.Match[str]], dict[str, Any]]:
    def build(_match: re.Match[str]) -> dict[str, Any]:
        return {"limit": DEFAULT_SEARCH_LIMIT, **extra}

    return build


def _p(regex: str) -> re.Pattern[str]:
    return re.compile(regex, re.IGNORECASE)


PATTERNS: list[CommandPattern] = [
    CommandPattern(
        _p(
            r"^create\s+(?:a\s+)?(?:new\s+)?table\s+(?:called|named|titled)\s+[\"']?(?P<name>.+?)[\"']?"
            r"\s+with\s+(?:the\s+)?(?:columns?|fields?)\s*:?\s*(?P<columns>.+)$"
        ),
        "createTable",
        _table,
        "create table with columns",
    ),
    CommandPattern(_p(rf"^create\s+(?:a\s+)?(?:new\s+)?table\s+{_NAMED}\s*$"), "createTable", _table, "create table"),
    CommandPattern(_p(rf"^create\s+(?:a\s+)?(?:new\s+)?task\s+{_NAMED}\s*$"), "createTaskItem", _title, "create task"),
    CommandPattern(_p(rf"^create\s+(?:a\s+)?(?:new\s+)?project\s+{_NAMED}\s*$"), "createProject", _name, "create project"),
    CommandPattern(_p(rf"^create\s+(?:a\s+)?(?:new\s+)?doc(?:ument)?\s+{_NAMED}\s*$"), "createDoc", _title, "create doc"),
    CommandPattern(
        _p(r"^(?:search|find|show|list|get)\s+(?:all\s+|my\s+)?overdue\s+tasks?\s*$"),
        "searchTasks",
        _search(overdue=True),
        "search overdue tasks",
    ),
    CommandPattern(_p(r"^(?:show|list|get)\s+(?:all\s+|my\s+)?tasks?\s*$"), "searchTasks", _search(), "list tasks"),
    CommandPattern(_p(r"^(?:show|list|get)\s+(?:all\s+|my\s+)?projects?\s*$"), "searchProjects", _search(), "list projects"),
    CommandPattern(_p(r"^(?:show|list|get)\s+(?:all\s+|my\s+)?docs?\s*$"), "searchDocs", _search(), "list docs"),
    CommandPattern(
        _p(r"^(?:show|list|get)\s+(?:all\s+|my\s+|the\s+)?timeline(?:\s+events?)?\s*$"),
        "searchTimelineEvents",
        _search(),
        "list timeline events",
    ),
]


def clean_command(text: str) -> str:
    """Strip trailing polite words and punctuation."""
    cleaned = (text or "").strip()
    cleaned = _POLITE_SUFFIX.sub("", cleaned)
    cleaned = _TRAILING_PUNCT.sub("", cleaned)
    return cleaned.strip()


def is_multi_step(text: str) -> bool:
    return bool(_MULTI_STEP.search(text) or _CHAINED_VERB.search(text))


def parse_column_list(raw: str) -> list[str]:
    """Split "A, B, and C" / "A and B" / "A; B" into column names."""
    parts = [part.strip() for part in re.split(r"[,;/]+", raw.strip()) if part.strip()]
    names: list[str] = []
    for part in parts:
        stripped = re.sub(r"^and\s+", "", part, flags=re.IGNORECASE)
        for name in re.split(r"\s+and\s+", stripped, flags=re.IGNORECASE):
            name = name.strip().strip("\"'")
            if name:
                names.append(name)
    return names


def match_command(text: str) -> list[ToolCallRequest] | None:
    """Resolve a simple command to a single-call plan, or None."""
    cleaned = clean_command(text)
    if not cleaned or is_multi_step(cleaned):
        return None

    for entry in PATTERNS:
        match = entry.pattern.match(cleaned)
        if not match:
            continue
        args = entry.build_args(match)
        logger.debug("Deterministic match (%s): %s -> %s", entry.description, cleaned, entry.tool)
        return [ToolCallRequest(tool=entry.tool, arguments=args)]
    return None
