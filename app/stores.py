"""In-memory trip store and transaction stubs for local development and tests."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from tripmate.dates import shift_iso_date


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryTx:
    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True


class InMemoryTxManager:
    def begin(self) -> InMemoryTx:
        return InMemoryTx()


class MemoryTripStore:
    """Row store with the same contract as ``DbTripStore``.

    Every mutation is scoped by plan id; ids are integers allocated per table.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[int, dict]] = {
            "users": {},
            "plans": {},
            "schedules": {},
            "travel_memos": {},
            "moments": {},
        }
        self._members: Dict[tuple, dict] = {}
        self._next_ids: Dict[str, int] = {}

    def _insert(self, table: str, values: dict) -> dict:
        new_id = self._next_ids.get(table, 0) + 1
        self._next_ids[table] = new_id
        row = copy.deepcopy(values)
        row["id"] = new_id
        self._tables[table][new_id] = row
        return row

    # seeding helpers

    def add_user(self, **values: Any) -> dict:
        values.setdefault("auth_provider", "google")
        return copy.deepcopy(self._insert("users", values))

    def add_plan(self, **values: Any) -> dict:
        values.setdefault("visibility", "private")
        return copy.deepcopy(self._insert("plans", values))

    # users

    def get_user(self, user_id: Any) -> dict | None:
        row = self._tables["users"].get(user_id)
        return copy.deepcopy(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> dict | None:
        for row in self._tables["users"].values():
            if row.get("google_id") == google_id:
                return copy.deepcopy(row)
        return None

    def get_guest_user(self, user_id: int) -> dict | None:
        row = self._tables["users"].get(user_id)
        if row and row.get("auth_provider") == "guest":
            return copy.deepcopy(row)
        return None

    def find_user_by_email(self, email: str) -> dict | None:
        needle = (email or "").strip().lower()
        for row in self._tables["users"].values():
            if isinstance(row.get("email"), str) and row["email"].lower() == needle:
                return copy.deepcopy(row)
        return None

    # plans

    def get_plan(self, plan_id: Any) -> dict | None:
        row = self._tables["plans"].get(plan_id)
        return copy.deepcopy(row) if row else None

    def update_plan(self, plan_id: int, changes: dict) -> int:
        row = self._tables["plans"].get(plan_id)
        if row is None:
            return 0
        row.update(copy.deepcopy(changes))
        return 1

    def set_visibility(self, plan_id: int, visibility: str) -> int:
        return self.update_plan(plan_id, {"visibility": visibility})

    def shift_plan_dates(self, plan_id: int, days: int) -> int:
        plan = self._tables["plans"].get(plan_id)
        if plan is None:
            raise KeyError(f"plan {plan_id} not found")
        # compute everything before writing so a bad date leaves rows untouched
        schedules = [s for s in self._tables["schedules"].values() if s.get("plan_id") == plan_id]
        shifted = [(s, shift_iso_date(s.get("date"), days, f"schedules[{s['id']}].date")) for s in schedules]
        start = shift_iso_date(plan.get("start_date"), days, "plan.start_date")
        end = shift_iso_date(plan.get("end_date"), days, "plan.end_date")
        for sched, new_date in shifted:
            sched["date"] = new_date
        plan["start_date"] = start
        plan["end_date"] = end
        return len(shifted)

    # schedules

    def insert_schedule(self, plan_id: int, values: dict) -> int:
        row = {
            "plan_id": plan_id,
            "date": values.get("date"),
            "time": values.get("time") or None,
            "title": values.get("title"),
            "place": values.get("place") or None,
            "place_en": values.get("place_en") or None,
            "memo": values.get("memo") or None,
            "plan_b": values.get("plan_b") or "",
            "plan_c": values.get("plan_c") or "",
            "order_index": 0,
        }
        return self._insert("schedules", row)["id"]

    def get_schedule(self, schedule_id: int) -> dict | None:
        row = self._tables["schedules"].get(schedule_id)
        return copy.deepcopy(row) if row else None

    def list_schedules(self, plan_id: int, limit: int | None = None) -> List[dict]:
        rows = [copy.deepcopy(r) for r in self._tables["schedules"].values() if r.get("plan_id") == plan_id]
        rows.sort(key=lambda r: (r.get("date") or "", r.get("time") or "", r["id"]))
        return rows[:limit] if limit is not None else rows

    def schedule_in_plan(self, plan_id: int, schedule_id: int) -> bool:
        row = self._tables["schedules"].get(schedule_id)
        return bool(row) and row.get("plan_id") == plan_id

    def update_schedule(self, plan_id: int, schedule_id: int, changes: dict) -> int:
        if not self.schedule_in_plan(plan_id, schedule_id):
            return 0
        self._tables["schedules"][schedule_id].update(copy.deepcopy(changes))
        return 1

    def delete_schedule(self, plan_id: int, schedule_id: int) -> int:
        if not self.schedule_in_plan(plan_id, schedule_id):
            return 0
        del self._tables["schedules"][schedule_id]
        for moment_id in [m["id"] for m in self._tables["moments"].values() if m.get("schedule_id") == schedule_id]:
            del self._tables["moments"][moment_id]
        return 1

    # travel memos

    def _memo_in_plan(self, plan_id: int, memo_id: int) -> bool:
        row = self._tables["travel_memos"].get(memo_id)
        return bool(row) and row.get("plan_id") == plan_id

    def insert_memo(self, plan_id: int, values: dict, order_index: int = 0) -> int:
        row = {
            "plan_id": plan_id,
            "category": values.get("category"),
            "title": values.get("title"),
            "content": values.get("content") or None,
            "icon": values.get("icon") or None,
            "order_index": order_index,
            "updated_at": _now(),
        }
        return self._insert("travel_memos", row)["id"]

    def list_memos(self, plan_id: int) -> List[dict]:
        rows = [copy.deepcopy(r) for r in self._tables["travel_memos"].values() if r.get("plan_id") == plan_id]
        rows.sort(key=lambda r: (r.get("order_index") or 0, r["id"]))
        return rows

    def update_memo(self, plan_id: int, memo_id: int, changes: dict) -> int:
        if not self._memo_in_plan(plan_id, memo_id):
            return 0
        row = self._tables["travel_memos"][memo_id]
        row.update(copy.deepcopy(changes))
        row["updated_at"] = _now()
        return 1

    def delete_memo(self, plan_id: int, memo_id: int) -> int:
        if not self._memo_in_plan(plan_id, memo_id):
            return 0
        del self._tables["travel_memos"][memo_id]
        return 1

    def delete_memos_by_category(self, plan_id: int, categories: Iterable[str]) -> int:
        wanted = set(categories)
        doomed = [
            r["id"]
            for r in self._tables["travel_memos"].values()
            if r.get("plan_id") == plan_id and r.get("category") in wanted
        ]
        for memo_id in doomed:
            del self._tables["travel_memos"][memo_id]
        return len(doomed)

    def upsert_memo(self, plan_id: int, values: dict, order_index: int = 0) -> int:
        existing = sorted(
            r["id"]
            for r in self._tables["travel_memos"].values()
            if r.get("plan_id") == plan_id and r.get("category") == values.get("category")
        )
        if existing:
            memo_id = existing[0]
            self.update_memo(
                plan_id,
                memo_id,
                {
                    "title": values.get("title"),
                    "content": values.get("content") or None,
                    "icon": values.get("icon") or None,
                    "order_index": order_index,
                },
            )
            return memo_id
        return self.insert_memo(plan_id, values, order_index=order_index)

    # moments

    def insert_moment(self, schedule_id: int, user_id: int, values: dict) -> int:
        row = {
            "schedule_id": schedule_id,
            "user_id": user_id,
            "photo_data": values.get("photo_data"),
            "note": values.get("note"),
            "mood": values.get("mood"),
            "revisit": values.get("revisit"),
            "rating": values.get("rating"),
            "created_at": _now(),
        }
        return self._insert("moments", row)["id"]

    def get_moment(self, moment_id: int) -> dict | None:
        row = self._tables["moments"].get(moment_id)
        return copy.deepcopy(row) if row else None

    def _moment_in_scope(self, plan_id: int, moment_id: int, user_id: Any) -> bool:
        row = self._tables["moments"].get(moment_id)
        if not row or not self.schedule_in_plan(plan_id, row.get("schedule_id")):
            return False
        return user_id is None or row.get("user_id") == user_id

    def update_moment(self, plan_id: int, moment_id: int, changes: dict, user_id: Any = None) -> int:
        if not self._moment_in_scope(plan_id, moment_id, user_id):
            return 0
        self._tables["moments"][moment_id].update(copy.deepcopy(changes))
        return 1

    def delete_moment(self, plan_id: int, moment_id: int, user_id: Any = None) -> int:
        if not self._moment_in_scope(plan_id, moment_id, user_id):
            return 0
        del self._tables["moments"][moment_id]
        return 1

    # members

    def is_member(self, plan_id: Any, user_id: Any) -> bool:
        return (plan_id, user_id) in self._members

    def add_member(self, plan_id: int, user_id: int, role: str = "member") -> None:
        self._members.setdefault((plan_id, user_id), {"plan_id": plan_id, "user_id": user_id, "role": role, "joined_at": _now()})

    def remove_member(self, plan_id: int, user_id: int) -> int:
        return 1 if self._members.pop((plan_id, user_id), None) else 0

    def list_members(self, plan_id: int) -> List[dict]:
        return [copy.deepcopy(m) for (pid, _), m in self._members.items() if pid == plan_id]
