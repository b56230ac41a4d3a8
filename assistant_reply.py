"""Completion reply parsing and response aggregation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List


logger = logging.getLogger("tripmate.assistant")

MEMO_KINDS = frozenset({"add_memo", "update_memo", "delete_memo", "generate_memos"})
MOMENT_KINDS = frozenset({"add_moment", "update_moment", "delete_moment"})
MEMBER_KINDS = frozenset({"add_member", "remove_member"})
VISIBILITY_KINDS = frozenset({"set_visibility"})
SCHEDULE_KINDS = frozenset({"add", "update", "delete"})


@dataclass
class ParsedCompletion:
    reply: str
    actions: List[Any] = field(default_factory=list)


def parse_completion(raw_text: Any) -> ParsedCompletion:
    """Read ``{reply, actions}`` from completion text, degrading to plain chat."""
    text = raw_text if isinstance(raw_text, str) else ""
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError) as exc:
        logger.info("assistant_reply_not_json error=%s head=%r", exc, text[:200])
        return ParsedCompletion(reply=text, actions=[])

    if not isinstance(parsed, dict):
        return ParsedCompletion(reply=text, actions=[])

    reply = parsed.get("reply")
    if not isinstance(reply, str) or not reply:
        reply = text
    actions = parsed.get("actions")
    if not isinstance(actions, list):
        actions = []
    return ParsedCompletion(reply=reply, actions=actions)


def _result_dicts(results: Iterable[Any]) -> List[dict]:
    items = []
    for res in results:
        if hasattr(res, "to_dict"):
            items.append(res.to_dict())
        elif isinstance(res, dict):
            items.append(res)
    return items


def _any_success(items: List[dict], kinds: frozenset) -> bool:
    return any(item.get("success") and item.get("kind") in kinds for item in items)


def assemble_response(reply: str, results: Iterable[Any]) -> dict:
    items = _result_dicts(results)
    modified_ids = [
        item["id"]
        for item in items
        if item.get("success") and item.get("kind") in SCHEDULE_KINDS and item.get("id") is not None
    ]
    return {
        "reply": reply,
        "actions": items,
        "hasChanges": len(items) > 0,
        "hasMemoChanges": _any_success(items, MEMO_KINDS),
        "hasMomentChanges": _any_success(items, MOMENT_KINDS),
        "hasMemberChanges": _any_success(items, MEMBER_KINDS),
        "hasVisibilityChange": _any_success(items, VISIBILITY_KINDS),
        "modifiedScheduleIds": modified_ids,
    }
