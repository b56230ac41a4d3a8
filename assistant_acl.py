"""Role gate for assistant actions (pure lookup, no side effects)."""

from __future__ import annotations

from typing import Any, Dict


ROLE_OWNER = "owner"
ROLE_MEMBER = "member"

ACL: Dict[str, Dict[str, bool]] = {
    "chat": {ROLE_OWNER: True, ROLE_MEMBER: True},
    "add": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "update": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "delete": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "shift_all": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "delete_matching": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "update_plan": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "add_memo": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "update_memo": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "delete_memo": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "generate_memos": {ROLE_OWNER: True, ROLE_MEMBER: False},
    # moment ownership is checked again per row by the executor
    "add_moment": {ROLE_OWNER: True, ROLE_MEMBER: True},
    "update_moment": {ROLE_OWNER: True, ROLE_MEMBER: True},
    "delete_moment": {ROLE_OWNER: True, ROLE_MEMBER: True},
    "add_member": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "remove_member": {ROLE_OWNER: True, ROLE_MEMBER: False},
    "set_visibility": {ROLE_OWNER: True, ROLE_MEMBER: False},
}

ACTION_KINDS = frozenset(ACL)


def role_for_acl(access: Any) -> str | None:
    """Collapse an access level into an ACL subject; public/none have none."""
    value = getattr(access, "value", access)
    if value in (ROLE_OWNER, ROLE_MEMBER):
        return value
    return None


def can_execute(kind: Any, access: Any) -> bool:
    role = role_for_acl(access)
    if role is None:
        return False
    if not isinstance(kind, str):
        return False
    rule = ACL.get(kind)
    if rule is None:
        return False
    return rule.get(role, False)


def allowed_kinds(access: Any) -> list[str]:
    return sorted(kind for kind in ACTION_KINDS if can_execute(kind, access))
