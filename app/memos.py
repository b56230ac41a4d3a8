"""Schedule-driven travel memo generation."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, List

import anyio.from_thread

from app.completion import CompletionClient, CompletionConfig


logger = logging.getLogger("tripmate.memos")

SCHEDULE_LIMIT = 300
LEGACY_CATEGORIES = ("visa", "timezone", "weather", "currency", "emergency")
MEMO_CONFIG = CompletionConfig(temperature=0.5, max_output_tokens=2000, json_mode=True)

_SYSTEM_PROMPT = """You are a travel planning assistant.
Generate practical travel memos based on the existing schedule data.

Output a JSON object with a "memos" array:
{
  "memos": [
    {"category": "reservation", "title": "Bookings to confirm", "content": "...", "icon": "📌"},
    {"category": "transportation", "title": "Transfer checkpoints", "content": "...", "icon": "🚆"},
    {"category": "budget", "title": "Budget check", "content": "...", "icon": "💳"},
    {"category": "packing", "title": "Packing list", "content": "...", "icon": "🎒"},
    {"category": "contact", "title": "Contacts and emergencies", "content": "...", "icon": "🆘"}
  ]
}

CRITICAL RULES:
1) All text must be in {language}.
2) Only use actionable points derived from the schedules.
3) If a fact is uncertain (exchange rate, policy, emergency number, weather), do NOT guess; write that it must be checked locally or before departure.
4) No generic encyclopedia-style destination info.
5) Prefer short checklist-style sentences.
6) At least 4 memos, at most 8.
7) Never quote exchange rates; focus on payment methods, fees and ATM checks instead."""


def schedule_context(schedules: List[dict]) -> str:
    lines = []
    for s in schedules:
        lines.append(
            f"{s.get('date') or ''} {s.get('time') or '--:--'} | {s.get('title') or ''} | {s.get('place') or ''} | {s.get('memo') or ''}"
        )
    return "\n".join(lines)


def build_memo_messages(region: str, schedules: List[dict], language: str = "Korean") -> List[dict]:
    user = (
        f"Travel region: {region}\n\n"
        f"Registered schedules:\n{schedule_context(schedules) or '(no schedules)'}\n\n"
        "Create practical memos from the schedules above."
    )
    return [
        {"role": "system", "content": _SYSTEM_PROMPT.replace("{language}", language)},
        {"role": "user", "content": user},
    ]


def parse_memos(text: str) -> List[dict]:
    """Accept a bare list, ``{"memos": [...]}`` or an object whose values are memos."""
    parsed = json.loads(text)
    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict) and isinstance(parsed.get("memos"), list):
        items = parsed["memos"]
    elif isinstance(parsed, dict):
        items = [v for v in parsed.values() if isinstance(v, dict) and v.get("category")]
    else:
        raise ValueError("memo response is not a list or object")
    return [m for m in items if isinstance(m, dict)]


def apply_memos(store: Any, plan_id: int, memos: List[dict]) -> int:
    """Upsert the new memos by category, then drop legacy general-info memos.

    Legacy categories are deleted only after every upsert succeeded, and a
    legacy category the new set rewrites is kept as the fresh row.
    """
    applied = 0
    written = set()
    for memo in memos:
        category = memo.get("category")
        title = memo.get("title")
        if not (isinstance(category, str) and category and isinstance(title, str) and title):
            continue
        store.upsert_memo(plan_id, memo, order_index=applied)
        written.add(category)
        applied += 1
    stale = [c for c in LEGACY_CATEGORIES if c not in written]
    if stale:
        store.delete_memos_by_category(plan_id, stale)
    logger.info("memos_applied plan_id=%s count=%s", plan_id, applied)
    return applied


def threaded_memo_generator(
    client: CompletionClient, store: Any, region: str, language: str = "Korean"
) -> Callable[[int], int]:
    """Memo generation callable for code running in an anyio worker thread.

    Only the completion call hops back to the event loop; store reads and
    writes stay on the worker so they join the caller's transaction.
    """

    def _generate(plan_id: int) -> int:
        if not region:
            raise ValueError("Plan region is required to generate memos")
        schedules = store.list_schedules(plan_id, limit=SCHEDULE_LIMIT)
        text = anyio.from_thread.run(client.complete, build_memo_messages(region, schedules, language), MEMO_CONFIG)
        return apply_memos(store, plan_id, parse_memos(text))

    return _generate
