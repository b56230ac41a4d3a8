from __future__ import annotations

from enum import Enum
from typing import Any


class AccessLevel(str, Enum):
    OWNER = "owner"
    MEMBER = "member"
    PUBLIC = "public"
    NONE = "none"


ASSISTANT_LEVELS = frozenset({AccessLevel.OWNER, AccessLevel.MEMBER})


def evaluate_access(store: Any, plan_id: Any, user_id: Any) -> AccessLevel:
    """Resolve the requester's tier on a plan. Read-only.

    Ownership wins over visibility; ``member`` needs a shared plan and a
    membership row; everything else is ``none``.
    """
    plan = store.get_plan(plan_id)
    if not plan:
        return AccessLevel.NONE
    if user_id is not None and plan.get("user_id") == user_id:
        return AccessLevel.OWNER
    visibility = plan.get("visibility")
    if visibility == "public":
        return AccessLevel.PUBLIC
    if visibility == "shared" and user_id is not None and store.is_member(plan_id, user_id):
        return AccessLevel.MEMBER
    return AccessLevel.NONE


def can_use_assistant(access: AccessLevel) -> bool:
    return access in ASSISTANT_LEVELS
