"""Assistant action execution (ACL-gated, one transaction per action)."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from assistant_acl import ROLE_OWNER, can_execute, role_for_acl
from assistant_actions import (
    VISIBILITY_VALUES,
    ActionPayloadError,
    ActionResult,
    AddMember,
    AddMemo,
    AddMoment,
    AddSchedule,
    Chat,
    DeleteMatching,
    DeleteMemo,
    DeleteMoment,
    DeleteSchedule,
    GenerateMemos,
    RemoveMember,
    SetVisibility,
    ShiftAll,
    UpdateMemo,
    UpdateMoment,
    UpdatePlan,
    UpdateSchedule,
    action_kind,
    parse_action,
)
from tripmate.keywords import matches_any_keyword, split_keywords


logger = logging.getLogger("tripmate.assistant")

PERMISSION_DENIED = "Permission denied"


def _ok(kind: str, record_id: int | None = None, **extras: Any) -> ActionResult:
    return ActionResult(kind=kind, success=True, id=record_id, extras=extras)


def _fail(kind: str | None, error: str, record_id: int | None = None) -> ActionResult:
    return ActionResult(kind=kind, success=False, id=record_id, error=error)


def _touched(kind: str, rowcount: int, record_id: int, missing: str) -> ActionResult:
    if rowcount and rowcount > 0:
        return _ok(kind, record_id)
    return _fail(kind, missing, record_id)


def _apply_add(action: AddSchedule, ctx: dict, deps: dict) -> ActionResult:
    new_id = deps["store"].insert_schedule(ctx["plan_id"], dict(action.values))
    return _ok(action.kind, new_id)


def _apply_update(action: UpdateSchedule, ctx: dict, deps: dict) -> ActionResult:
    if not action.changes:
        return _fail(action.kind, "No updatable fields", action.id)
    count = deps["store"].update_schedule(ctx["plan_id"], action.id, dict(action.changes))
    return _touched(action.kind, count, action.id, "Schedule not found")


def _apply_delete(action: DeleteSchedule, ctx: dict, deps: dict) -> ActionResult:
    count = deps["store"].delete_schedule(ctx["plan_id"], action.id)
    return _touched(action.kind, count, action.id, "Schedule not found")


def _apply_shift_all(action: ShiftAll, ctx: dict, deps: dict) -> ActionResult:
    count = deps["store"].shift_plan_dates(ctx["plan_id"], action.days)
    return _ok(action.kind, days=action.days, count=count)


def _apply_delete_matching(action: DeleteMatching, ctx: dict, deps: dict) -> ActionResult:
    store = deps["store"]
    plan_id = ctx["plan_id"]
    keywords = split_keywords(action.pattern)
    deleted = 0
    for sched in store.list_schedules(plan_id):
        if matches_any_keyword((sched.get("title"), sched.get("place"), sched.get("memo")), keywords):
            deleted += store.delete_schedule(plan_id, sched["id"])
    return _ok(action.kind, count=deleted)


def _apply_update_plan(action: UpdatePlan, ctx: dict, deps: dict) -> ActionResult:
    if not action.changes:
        return _fail(action.kind, "No updatable fields")
    count = deps["store"].update_plan(ctx["plan_id"], dict(action.changes))
    return _touched(action.kind, count, None, "Plan not found")


def _apply_add_memo(action: AddMemo, ctx: dict, deps: dict) -> ActionResult:
    new_id = deps["store"].insert_memo(ctx["plan_id"], dict(action.values))
    return _ok(action.kind, new_id)


def _apply_update_memo(action: UpdateMemo, ctx: dict, deps: dict) -> ActionResult:
    if not action.changes:
        return _fail(action.kind, "No updatable fields", action.id)
    count = deps["store"].update_memo(ctx["plan_id"], action.id, dict(action.changes))
    return _touched(action.kind, count, action.id, "Memo not found")


def _apply_delete_memo(action: DeleteMemo, ctx: dict, deps: dict) -> ActionResult:
    count = deps["store"].delete_memo(ctx["plan_id"], action.id)
    return _touched(action.kind, count, action.id, "Memo not found")


def _apply_generate_memos(action: GenerateMemos, ctx: dict, deps: dict) -> ActionResult:
    generator: Callable[[int], int] | None = deps.get("memos")
    if generator is None:
        return _fail(action.kind, "Memo generation is not available")
    count = generator(ctx["plan_id"])
    return _ok(action.kind, count=count)


def _moment_scope(ctx: dict) -> Any:
    # the owner may touch any moment under the plan; members only their own
    if role_for_acl(ctx.get("access")) == ROLE_OWNER:
        return None
    return ctx.get("user_id")


def _apply_add_moment(action: AddMoment, ctx: dict, deps: dict) -> ActionResult:
    store = deps["store"]
    if not store.schedule_in_plan(ctx["plan_id"], action.schedule_id):
        return _fail(action.kind, "Schedule not found")
    new_id = store.insert_moment(action.schedule_id, ctx["user_id"], dict(action.values))
    return _ok(action.kind, new_id, schedule_id=action.schedule_id)


def _apply_update_moment(action: UpdateMoment, ctx: dict, deps: dict) -> ActionResult:
    if not action.changes:
        return _fail(action.kind, "No updatable fields", action.id)
    count = deps["store"].update_moment(ctx["plan_id"], action.id, dict(action.changes), user_id=_moment_scope(ctx))
    return _touched(action.kind, count, action.id, "Moment not found")


def _apply_delete_moment(action: DeleteMoment, ctx: dict, deps: dict) -> ActionResult:
    count = deps["store"].delete_moment(ctx["plan_id"], action.id, user_id=_moment_scope(ctx))
    return _touched(action.kind, count, action.id, "Moment not found")


def _apply_add_member(action: AddMember, ctx: dict, deps: dict) -> ActionResult:
    store = deps["store"]
    invitee = store.find_user_by_email(action.email)
    if invitee is None:
        return _fail(action.kind, "User not found")
    invitee_id = invitee["id"]
    if invitee_id == ctx.get("user_id"):
        return _fail(action.kind, "Cannot invite yourself")
    if store.is_member(ctx["plan_id"], invitee_id):
        return _ok(action.kind, invitee_id, already_member=True)
    store.add_member(ctx["plan_id"], invitee_id, "member")
    return _ok(action.kind, invitee_id)


def _apply_remove_member(action: RemoveMember, ctx: dict, deps: dict) -> ActionResult:
    count = deps["store"].remove_member(ctx["plan_id"], action.user_id)
    return _touched(action.kind, count, action.user_id, "Member not found")


def _apply_set_visibility(action: SetVisibility, ctx: dict, deps: dict) -> ActionResult:
    if action.visibility not in VISIBILITY_VALUES:
        return _fail(action.kind, "Invalid visibility")
    count = deps["store"].set_visibility(ctx["plan_id"], action.visibility)
    if not count:
        return _fail(action.kind, "Plan not found")
    return _ok(action.kind, visibility=action.visibility)


_HANDLERS: Dict[type, Callable[[Any, dict, dict], ActionResult]] = {
    AddSchedule: _apply_add,
    UpdateSchedule: _apply_update,
    DeleteSchedule: _apply_delete,
    ShiftAll: _apply_shift_all,
    DeleteMatching: _apply_delete_matching,
    UpdatePlan: _apply_update_plan,
    AddMemo: _apply_add_memo,
    UpdateMemo: _apply_update_memo,
    DeleteMemo: _apply_delete_memo,
    GenerateMemos: _apply_generate_memos,
    AddMoment: _apply_add_moment,
    UpdateMoment: _apply_update_moment,
    DeleteMoment: _apply_delete_moment,
    AddMember: _apply_add_member,
    RemoveMember: _apply_remove_member,
    SetVisibility: _apply_set_visibility,
}


def _self_target_error(action: Any, ctx: dict) -> str | None:
    if isinstance(action, RemoveMember) and action.user_id == ctx.get("user_id"):
        return "Cannot remove yourself"
    if isinstance(action, AddMember):
        email = ctx.get("user_email")
        if isinstance(email, str) and email.strip().lower() == action.email.lower():
            return "Cannot invite yourself"
    return None


def execute_actions(actions: List[Any], ctx: dict, deps: dict) -> List[ActionResult]:
    """Apply parsed completion actions to the plan in emitted order.

    ``ctx`` carries ``plan_id``, ``user_id``, ``user_email`` and ``access``;
    ``deps`` carries ``tx`` (begin/commit/rollback), ``store`` and optionally
    ``memos``. One result is recorded per attempted action; a ``chat`` action
    is conversational and records nothing. No exception escapes the loop.
    """
    results: List[ActionResult] = []
    if not isinstance(actions, list):
        return results

    tx_mgr = deps.get("tx")
    access = ctx.get("access")

    for idx, raw in enumerate(actions):
        kind = action_kind(raw)
        action = None
        payload_error: ActionPayloadError | None = None
        try:
            action = parse_action(raw)
        except ActionPayloadError as exc:
            payload_error = exc

        self_error = _self_target_error(action, ctx) if action is not None else None
        if self_error:
            results.append(_fail(kind, self_error))
            continue

        if not can_execute(kind, access):
            logger.info("assistant_action_denied idx=%s kind=%s access=%s", idx, kind, getattr(access, "value", access))
            results.append(_fail(kind, PERMISSION_DENIED))
            continue

        if payload_error is not None:
            logger.info("assistant_action_invalid idx=%s kind=%s error=%s", idx, kind, payload_error)
            results.append(_fail(kind, f"Invalid payload: {payload_error}"))
            continue

        if isinstance(action, Chat):
            continue

        handler = _HANDLERS[type(action)]
        tx = tx_mgr.begin() if tx_mgr is not None else None
        try:
            result = handler(action, ctx, deps)
        except Exception as exc:
            if tx is not None:
                tx.rollback()
            logger.warning("assistant_action_failed idx=%s kind=%s error=%s", idx, kind, exc)
            results.append(_fail(kind, str(exc)))
            continue
        if tx is not None:
            try:
                tx.commit()
            except Exception as exc:
                logger.warning("assistant_action_commit_failed idx=%s kind=%s error=%s", idx, kind, exc)
                results.append(_fail(kind, str(exc)))
                continue
        results.append(result)

    return results
