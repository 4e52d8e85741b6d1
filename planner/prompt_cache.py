"""
Prompt-to-Action Cache — normalized command text -> tool-call plan.

Built by the process root and injected into the execution core. Reads are
lock-free against an immutable mapping; warm() builds a new mapping under a
lock and swaps it in, so concurrent warmers never interleave partial state.
Entries do not expire: plans hold no tenant data and depend only on the
pattern table, which is fixed for the life of the process.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from planner.deterministic import match_command
from shared.models import ToolCallRequest

logger = logging.getLogger(__name__)

DEFAULT_SEEDS: tuple[str, ...] = (
    "Create a project named 'X'",
    "show my tasks",
    "list my tasks",
    "list tasks",
    "list projects",
    "show projects",
    "search overdue tasks",
    "show overdue tasks",
    "list docs",
    "show timeline events",
)


def normalize(text: str) -> str:
    """Lowercase and trim. Nothing else."""
    return (text or "").strip().lower()


class PromptCache:
    def __init__(
        self,
        seeds: Iterable[str] | None = None,
        seed_file: str | None = None,
    ):
        self._seeds = list(seeds) if seeds is not None else list(DEFAULT_SEEDS)
        self.seed_file = seed_file if seed_file is not None else os.getenv("PROMPT_CACHE_SEED_FILE", "").strip()
        self._lock = threading.Lock()
        self._entries: Mapping[str, tuple[ToolCallRequest, ...]] = MappingProxyType({})

    def __len__(self) -> int:
        return len(self._entries)

    def _load_seed_file(self) -> list[str]:
        if not self.seed_file:
            return []
        path = Path(self.seed_file)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Prompt cache seed file %s unreadable: %s", path, e)
            return []
        if isinstance(payload, dict):
            payload = payload.get("seeds", [])
        if not isinstance(payload, list):
            logger.warning("Prompt cache seed file %s must hold a list of commands", path)
            return []
        return [str(item) for item in payload if str(item).strip()]

    def warm(self) -> dict[str, int]:
        """Resolve every seed into a plan and atomically replace the mapping."""
        with self._lock:
            entries: dict[str, tuple[ToolCallRequest, ...]] = {}
            for seed in self._seeds + self._load_seed_file():
                plan = match_command(seed)
                if not plan:
                    logger.debug("Prompt cache seed has no deterministic plan: %r", seed)
                    continue
                entries[normalize(seed)] = tuple(plan)
            self._entries = MappingProxyType(entries)
        logger.info("Prompt cache warmed: %d entries", len(entries))
        return {"warmed": len(entries)}

    def lookup(self, normalized_text: str) -> list[ToolCallRequest] | None:
        plan = self._entries.get(normalized_text)
        return list(plan) if plan is not None else None
