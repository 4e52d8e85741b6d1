"""
Intent Classifier — deterministic keyword/pattern matcher.

Responsibility:
- Map raw command text to candidate actions, tool groups and a write flag
- Never call the model, never perform I/O

The write flag is derived ONLY from matched action verbs. Tool groups widen
the schema surface shown to the model; they say nothing about whether the
command mutates anything.
"""

from __future__ import annotations

import logging
import re
import time

from shared.models import Intent

logger = logging.getLogger(__name__)

CORE_GROUP = "core"

TOOL_GROUPS = frozenset(
    {
        "core",
        "task",
        "project",
        "table",
        "timeline",
        "block",
        "tab",
        "doc",
        "file",
        "client",
        "property",
        "comment",
        "workspace",
    }
)

WRITE_ACTIONS = frozenset({"create", "update", "delete", "organize", "move", "copy", "insert"})
READ_ACTIONS = frozenset({"search"})


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# What things are being referenced?
ENTITY_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "task": _compile([r"\btask(?:s|item)?\b", r"\bto-?do(?:s)?\b", r"\bassign(?:ee|ment|ed)?\b", r"\bsubtask(?:s)?\b"]),
    "project": _compile([r"\bproject(?:s)?\b"]),
    "workspace": _compile([r"\bworkspace(?:s)?\b"]),
    "table": _compile(
        [
            r"\btable(?:s)?\b",
            r"\brow(?:s)?\b",
            r"\bfield(?:s)?\b",
            r"\bcolumn(?:s)?\b",
            r"\bcell(?:s)?\b",
            r"\bspreadsheet(?:s)?\b",
        ]
    ),
    "timeline": _compile(
        [r"\btimeline(?:s)?\b", r"\bevent(?:s)?\b", r"\bmilestone(?:s)?\b", r"\bgantt", r"\bdependenc(?:y|ies)"]
    ),
    "block": _compile([r"\bblock(?:s)?\b", r"\bsection(?:s)?\b", r"\bchart(?:s)?\b", r"\bgraph(?:s)?\b"]),
    "tab": _compile([r"\btab(?:s)?\b", r"\bpage(?:s)?\b"]),
    "doc": _compile([r"\bdoc(?:s|ument)?(?:s)?\b", r"\bnote(?:s)?\b"]),
    "file": _compile([r"\bfile(?:s)?\b", r"\battachment(?:s)?\b", r"\bupload(?:s|ed|ing)?\b"]),
    "client": _compile([r"\bclient(?:s)?\b", r"\bcompan(?:y|ies)\b", r"\bcustomer(?:s)?\b"]),
}

# What operations are being requested?
ACTION_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "search": _compile(
        [
            r"\bsearch(?:ing)?\b",
            r"\bfind(?:ing)?\b",
            r"\blook(?:ing)?\s+(?:for|up)\b",
            r"\bget(?:ting)?\b",
            r"\bshow(?:ing)?\b",
            r"\blist(?:ing)?\b",
            r"\bdisplay(?:ing)?\b",
            r"\bview(?:ing)?\b",
            r"\bwho\b",
            r"\bwhat\b",
        ]
    ),
    "create": _compile(
        [
            r"\bcreat(?:e|ing)\b",
            r"\badd(?:ing)?\b",
            r"\bnew\b",
            r"\bmak(?:e|ing)\b",
            r"\bgenerat(?:e|ing)\b",
            r"\bbuild(?:ing)?\b",
        ]
    ),
    "update": _compile(
        [
            r"\bupdat(?:e|ing)\b",
            r"\bedit(?:ing)?\b",
            r"\bmodif(?:y|ying)\b",
            r"\bchang(?:e|ing)\b",
            r"\brenam(?:e|ing)\b",
            r"\bset(?:ting)?\b",
            r"\balter(?:ing)?\b",
            r"\bmark(?:ing)?\b",
            r"\breassign(?:ing)?\b",
        ]
    ),
    "delete": _compile(
        [r"\bdelet(?:e|ing)\b", r"\bremov(?:e|ing)\b", r"\bclear(?:ing)?\b", r"\barchiv(?:e|ing)\b"]
    ),
    "organize": _compile(
        [r"\borganiz(?:e|ing)\b", r"\bgroup(?:ing)?\s+by\b", r"\bsort(?:ing)?\b", r"\bcategoriz(?:e|ing)\b"]
    ),
    "move": _compile([r"\bmov(?:e|ing)\b", r"\btransfer(?:ring)?\b"]),
    "copy": _compile([r"\bcop(?:y|ying)\b", r"\bduplicat(?:e|ing)\b", r"\bclon(?:e|ing)\b"]),
    "insert": _compile([r"\binsert(?:ing)?\b", r"\bpopulat(?:e|ing)\b", r"\bappend(?:ing)?\b", r"\bimport(?:ing)?\b"]),
}

# Indicators of create/modify intent without an explicit verb ("mark as done",
# "50 tasks"). They widen tool groups only.
IMPLICIT_MODIFY_PATTERNS = _compile(
    [
        r"with.*(?:columns?|fields?|rows?)",
        r"(?:add|set|mark|assign).*(?:to|as)\b",
        r"populated?\s+with",
        r"(?:\d+|many|multiple|several)\s+(?:tasks?|rows?|items?)",
    ]
)

# Compound commands whose meaning is clearer as a whole; checked first.
SPECIAL_PATTERNS: list[tuple[re.Pattern[str], tuple[str, ...], tuple[str, ...], str]] = [
    (
        re.compile(r"(?:search|find).*tasks?.*(?:and|then).*(?:create|organize).*table", re.IGNORECASE),
        ("core", "table"),
        ("search", "create"),
        "Search tasks and organize into table",
    ),
    (
        re.compile(r"organize\s+(?:all\s+)?.*?(?:by|into)", re.IGNORECASE),
        ("core", "table"),
        ("organize",),
        "Organizing data into a structured table",
    ),
    (
        re.compile(r"create\s+(?:a\s+)?table\s+(?:with|of|for|containing)", re.IGNORECASE),
        ("core", "table"),
        ("create",),
        "Creating a table with data",
    ),
    (
        re.compile(r"^(?:search|find|show|list|get|display)\s+(?:all\s+|my\s+)?tasks?\b", re.IGNORECASE),
        ("core",),
        ("search",),
        "Read-only task search",
    ),
    (
        re.compile(r"(?:update|edit|modify|change)\s+(?:all\s+)?tasks?\b", re.IGNORECASE),
        ("core", "task"),
        ("update",),
        "Modifying tasks",
    ),
]

_CONTEXTUAL_PROJECT = re.compile(r"\b(?:in|on|for)\s+(?:the|this)\s+project\b", re.IGNORECASE)


def has_write_actions(actions: frozenset[str] | set[str]) -> bool:
    return any(action in WRITE_ACTIONS for action in actions)


def _has_implicit_modify_intent(command: str) -> bool:
    return any(pattern.search(command) for pattern in IMPLICIT_MODIFY_PATTERNS)


def _match_keys(command: str, table: dict[str, list[re.Pattern[str]]]) -> list[str]:
    matched: list[str] = []
    for key, patterns in table.items():
        if any(pattern.search(command) for pattern in patterns):
            matched.append(key)
    return matched


def _confidence(entities: list[str], actions: list[str]) -> float:
    confidence = 0.5
    if entities:
        confidence += 0.2
    if len(entities) > 1:
        confidence += 0.1
    if actions:
        confidence += 0.2
    return min(confidence, 1.0)


def _reasoning(entities: list[str], actions: list[str], groups: set[str]) -> str:
    parts: list[str] = []
    if entities:
        parts.append(f"Entities: {', '.join(entities)}")
    if actions:
        parts.append(f"Actions: {', '.join(actions)}")
    extra = sorted(group for group in groups if group != CORE_GROUP)
    parts.append(f"Tool groups: {', '.join(extra)}" if extra else "Core search tools only")
    return " | ".join(parts)


def classify(command_text: str) -> Intent:
    """Classify a raw command into actions, tool groups and a write flag."""
    t0 = time.perf_counter()
    command = (command_text or "").strip()
    if not command:
        return Intent(confidence=0.0, reasoning="Empty command")

    for pattern, groups, actions, reasoning in SPECIAL_PATTERNS:
        if pattern.search(command):
            intent = Intent(
                actions=frozenset(actions),
                tool_groups=frozenset(groups),
                has_write_intent=has_write_actions(set(actions)),
                confidence=0.95,
                reasoning=reasoning,
            )
            logger.debug("classify: special match in %.2fms: %s", (time.perf_counter() - t0) * 1000, reasoning)
            return intent

    entities = _match_keys(command, ENTITY_PATTERNS)
    actions = _match_keys(command, ACTION_PATTERNS)
    write = has_write_actions(set(actions))
    implicit_modify = _has_implicit_modify_intent(command)

    groups: set[str] = {CORE_GROUP}
    if write or implicit_modify:
        for entity in entities:
            if entity == "project" and _CONTEXTUAL_PROJECT.search(command):
                continue
            groups.add(entity)

    if groups == {CORE_GROUP} and write:
        lowered = command.lower()
        if "assign" in lowered:
            groups.add("task")
        if any(word in lowered for word in ("data", "rows", "fields")):
            groups.add("table")

    intent = Intent(
        actions=frozenset(actions),
        tool_groups=frozenset(groups),
        has_write_intent=write,
        entities=tuple(entities),
        confidence=_confidence(entities, actions) if (entities or actions) else 0.2,
        reasoning=_reasoning(entities, actions, groups),
    )
    logger.debug("classify: %.2fms %s", (time.perf_counter() - t0) * 1000, intent.reasoning)
    return intent
