"""Typed assistant actions parsed from untrusted completion output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Tuple, Union


SCHEDULE_FIELDS = frozenset({"title", "place", "place_en", "memo", "time", "date", "plan_b", "plan_c"})
PLAN_FIELDS = frozenset({"title", "region", "start_date", "end_date", "country", "country_code"})
MEMO_FIELDS = frozenset({"title", "content", "icon", "category"})
MOMENT_FIELDS = frozenset({"note", "mood", "revisit", "rating", "photo_data"})

VISIBILITY_VALUES = ("private", "shared", "public")
MOOD_VALUES = ("amazing", "good", "okay", "meh", "bad")
REVISIT_VALUES = ("yes", "no", "maybe")
MAX_MOMENT_NOTE = 200

_INT_RE = re.compile(r"^-?\d+$")


class ActionPayloadError(ValueError):
    """Raised when an action payload does not have the shape its kind requires."""


Changes = Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class Chat:
    kind: ClassVar[str] = "chat"


@dataclass(frozen=True)
class AddSchedule:
    kind: ClassVar[str] = "add"
    values: Changes


@dataclass(frozen=True)
class UpdateSchedule:
    kind: ClassVar[str] = "update"
    id: int
    changes: Changes


@dataclass(frozen=True)
class DeleteSchedule:
    kind: ClassVar[str] = "delete"
    id: int


@dataclass(frozen=True)
class ShiftAll:
    kind: ClassVar[str] = "shift_all"
    days: int


@dataclass(frozen=True)
class DeleteMatching:
    kind: ClassVar[str] = "delete_matching"
    pattern: str


@dataclass(frozen=True)
class UpdatePlan:
    kind: ClassVar[str] = "update_plan"
    changes: Changes


@dataclass(frozen=True)
class AddMemo:
    kind: ClassVar[str] = "add_memo"
    values: Changes


@dataclass(frozen=True)
class UpdateMemo:
    kind: ClassVar[str] = "update_memo"
    id: int
    changes: Changes


@dataclass(frozen=True)
class DeleteMemo:
    kind: ClassVar[str] = "delete_memo"
    id: int


@dataclass(frozen=True)
class GenerateMemos:
    kind: ClassVar[str] = "generate_memos"


@dataclass(frozen=True)
class AddMoment:
    kind: ClassVar[str] = "add_moment"
    schedule_id: int
    values: Changes


@dataclass(frozen=True)
class UpdateMoment:
    kind: ClassVar[str] = "update_moment"
    id: int
    changes: Changes


@dataclass(frozen=True)
class DeleteMoment:
    kind: ClassVar[str] = "delete_moment"
    id: int


@dataclass(frozen=True)
class AddMember:
    kind: ClassVar[str] = "add_member"
    email: str


@dataclass(frozen=True)
class RemoveMember:
    kind: ClassVar[str] = "remove_member"
    user_id: int


@dataclass(frozen=True)
class SetVisibility:
    kind: ClassVar[str] = "set_visibility"
    visibility: str


Action = Union[
    Chat,
    AddSchedule,
    UpdateSchedule,
    DeleteSchedule,
    ShiftAll,
    DeleteMatching,
    UpdatePlan,
    AddMemo,
    UpdateMemo,
    DeleteMemo,
    GenerateMemos,
    AddMoment,
    UpdateMoment,
    DeleteMoment,
    AddMember,
    RemoveMember,
    SetVisibility,
]


def action_kind(raw: Any) -> str | None:
    if isinstance(raw, dict) and isinstance(raw.get("type"), str):
        return raw["type"]
    return None


def _int_field(raw: dict, name: str) -> int:
    value = raw.get(name)
    if isinstance(value, bool):
        raise ActionPayloadError(f"{name} must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise ActionPayloadError(f"{name} must be a number")


def _str_field(raw: dict, name: str) -> str:
    value = raw.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ActionPayloadError(f"{name} must be a non-empty string")
    return value.strip()


def _object_field(raw: dict, name: str) -> dict:
    value = raw.get(name)
    if not isinstance(value, dict):
        raise ActionPayloadError(f"{name} must be an object")
    return value


def filter_fields(values: dict, allowed: frozenset) -> Changes:
    """Keep allow-listed columns only, in the order the payload gave them."""
    return tuple((key, val) for key, val in values.items() if key in allowed)


def _validate_moment_values(values: Changes) -> None:
    for key, val in values:
        if key == "note" and val is not None:
            if not isinstance(val, str):
                raise ActionPayloadError("note must be a string")
            if len(val) > MAX_MOMENT_NOTE:
                raise ActionPayloadError(f"note must be {MAX_MOMENT_NOTE} characters or less")
        elif key == "mood" and val is not None and val not in MOOD_VALUES:
            raise ActionPayloadError("Invalid mood value")
        elif key == "revisit" and val is not None and val not in REVISIT_VALUES:
            raise ActionPayloadError("Invalid revisit value")
        elif key == "rating" and val is not None:
            if isinstance(val, bool) or not isinstance(val, int) or not 1 <= val <= 5:
                raise ActionPayloadError("Rating must be integer 1-5")


def _parse_add(raw: dict) -> AddSchedule:
    schedule = _object_field(raw, "schedule")
    _str_field(schedule, "title")
    _str_field(schedule, "date")
    return AddSchedule(values=filter_fields(schedule, SCHEDULE_FIELDS))


def _parse_update(raw: dict) -> UpdateSchedule:
    return UpdateSchedule(
        id=_int_field(raw, "id"),
        changes=filter_fields(_object_field(raw, "changes"), SCHEDULE_FIELDS),
    )


def _parse_add_memo(raw: dict) -> AddMemo:
    memo = _object_field(raw, "memo")
    _str_field(memo, "category")
    _str_field(memo, "title")
    return AddMemo(values=filter_fields(memo, MEMO_FIELDS))


def _parse_add_moment(raw: dict) -> AddMoment:
    schedule_id = _int_field(raw, "schedule_id")
    values = filter_fields(_object_field(raw, "moment"), MOMENT_FIELDS)
    present = {key for key, val in values if val not in (None, "")}
    if not present & {"photo_data", "note", "mood", "revisit"}:
        raise ActionPayloadError("moment needs photo_data, note, mood or revisit")
    _validate_moment_values(values)
    return AddMoment(schedule_id=schedule_id, values=values)


def _parse_update_moment(raw: dict) -> UpdateMoment:
    changes = filter_fields(_object_field(raw, "changes"), MOMENT_FIELDS)
    _validate_moment_values(changes)
    return UpdateMoment(id=_int_field(raw, "id"), changes=changes)


def _parse_days(raw: dict) -> ShiftAll:
    # a bare digit string is not a day count
    if isinstance(raw.get("days"), str):
        raise ActionPayloadError("days must be a number")
    return ShiftAll(days=_int_field(raw, "days"))


_PARSERS: Dict[str, Callable[[dict], Any]] = {
    "chat": lambda raw: Chat(),
    "add": _parse_add,
    "update": _parse_update,
    "delete": lambda raw: DeleteSchedule(id=_int_field(raw, "id")),
    "shift_all": _parse_days,
    "delete_matching": lambda raw: DeleteMatching(pattern=_str_field(raw, "pattern")),
    "update_plan": lambda raw: UpdatePlan(changes=filter_fields(_object_field(raw, "changes"), PLAN_FIELDS)),
    "add_memo": _parse_add_memo,
    "update_memo": lambda raw: UpdateMemo(
        id=_int_field(raw, "id"),
        changes=filter_fields(_object_field(raw, "changes"), MEMO_FIELDS),
    ),
    "delete_memo": lambda raw: DeleteMemo(id=_int_field(raw, "id")),
    "generate_memos": lambda raw: GenerateMemos(),
    "add_moment": _parse_add_moment,
    "update_moment": _parse_update_moment,
    "delete_moment": lambda raw: DeleteMoment(id=_int_field(raw, "id")),
    "add_member": lambda raw: AddMember(email=_str_field(raw, "email")),
    "remove_member": lambda raw: RemoveMember(user_id=_int_field(raw, "user_id")),
    "set_visibility": lambda raw: SetVisibility(visibility=_str_field(raw, "visibility")),
}


def parse_action(raw: Any) -> Action:
    if not isinstance(raw, dict):
        raise ActionPayloadError("action must be an object")
    kind = action_kind(raw)
    if kind is None:
        raise ActionPayloadError("type is required")
    parser = _PARSERS.get(kind)
    if parser is None:
        raise ActionPayloadError(f"unknown action type: {kind}")
    return parser(raw)


@dataclass
class ActionResult:
    kind: str | None
    success: bool
    id: int | None = None
    error: str | None = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"kind": self.kind, "success": self.success}
        if self.id is not None:
            out["id"] = self.id
        if self.error is not None:
            out["error"] = self.error
        out.update(self.extras)
        return out
