"""DB-backed trip store (Postgres, parameterized SQL scoped by plan)."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any, Iterable, List

from app.db import execute, fetch_all, fetch_one, get_conn, init_pool, _get_pool, set_active_conn, clear_active_conn

logger = logging.getLogger("tripmate.db")


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: ContextVar[_TxContext | None] = ContextVar("tripmate_tx_context", default=None)


class DbTx:
    def __init__(self, ctx: _TxContext):
        self._ctx = ctx

    @property
    def conn(self):
        return self._ctx.conn

    def _release(self) -> None:
        ctx = self._ctx
        ctx.pool.putconn(ctx.conn)
        _TX_CONTEXT.set(None)
        clear_active_conn()

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            if ctx.failed:
                ctx.conn.rollback()
            else:
                ctx.conn.commit()
        finally:
            self._release()

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        logger.info("db_tx_rollback")
        try:
            ctx.conn.rollback()
        finally:
            self._release()


class DbTxManager:
    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT.get()
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        init_pool()
        pool = _get_pool()
        conn = pool.getconn()
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT.set(ctx)
        set_active_conn(conn)
        return DbTx(ctx)


def _set_clause(changes: dict, allowed: Iterable[str]) -> tuple[str, list]:
    # column names come from the caller's allow-list, never from the payload
    allowed = set(allowed)
    cols = [key for key in changes if key in allowed]
    return ", ".join(f"{col}=%s" for col in cols), [changes[col] for col in cols]


_SCHEDULE_COLUMNS = ("title", "place", "place_en", "memo", "time", "date", "plan_b", "plan_c")
_PLAN_COLUMNS = ("title", "region", "start_date", "end_date", "country", "country_code", "visibility")
_MEMO_COLUMNS = ("title", "content", "icon", "category", "order_index")
_MOMENT_COLUMNS = ("note", "mood", "revisit", "rating", "photo_data")
_DATE_COLUMNS = ("start_date", "end_date", "date")


def _iso_dates(row: dict | None) -> dict | None:
    if not row:
        return row
    for key in _DATE_COLUMNS:
        value = row.get(key)
        if hasattr(value, "isoformat"):
            row[key] = value.isoformat()
    return row


class DbTripStore:
    # users

    def get_user(self, user_id: Any) -> dict | None:
        with get_conn() as conn:
            return fetch_one(conn, "select * from users where id=%s", [user_id], query_name="users.get")

    def get_user_by_google_id(self, google_id: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                "select * from users where google_id=%s",
                [google_id],
                query_name="users.get_by_google_id",
            )

    def get_guest_user(self, user_id: int) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                "select * from users where id=%s and auth_provider='guest'",
                [user_id],
                query_name="users.get_guest",
            )

    def find_user_by_email(self, email: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                "select id, username, email from users where lower(email)=lower(%s) limit 1",
                [email],
                query_name="users.find_by_email",
            )

    # plans

    def get_plan(self, plan_id: Any) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select id, user_id, title, region, country, country_code, start_date, end_date, visibility
                from plans
                where id=%s
                """,
                [plan_id],
                query_name="plans.get",
            )
        return _iso_dates(row)

    def update_plan(self, plan_id: int, changes: dict) -> int:
        sets, values = _set_clause(changes, _PLAN_COLUMNS)
        if not sets:
            return 0
        with get_conn() as conn:
            return execute(
                conn,
                f"update plans set {sets}, updated_at=now() where id=%s",
                values + [plan_id],
                query_name="plans.update",
            )

    def set_visibility(self, plan_id: int, visibility: str) -> int:
        return self.update_plan(plan_id, {"visibility": visibility})

    def shift_plan_dates(self, plan_id: int, days: int) -> int:
        with get_conn() as conn:
            count = execute(
                conn,
                "update schedules set date = date + %s where plan_id=%s",
                [days, plan_id],
                query_name="schedules.shift_dates",
            )
            plans = execute(
                conn,
                "update plans set start_date = start_date + %s, end_date = end_date + %s, updated_at=now() where id=%s",
                [days, days, plan_id],
                query_name="plans.shift_dates",
            )
            if not plans:
                raise KeyError(f"plan {plan_id} not found")
        return count

    # schedules

    def insert_schedule(self, plan_id: int, values: dict) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into schedules (plan_id, date, time, title, place, place_en, memo, plan_b, plan_c, order_index)
                values (%s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                returning id
                """,
                [
                    plan_id,
                    values.get("date"),
                    values.get("time") or None,
                    values.get("title"),
                    values.get("place") or None,
                    values.get("place_en") or None,
                    values.get("memo") or None,
                    values.get("plan_b") or "",
                    values.get("plan_c") or "",
                ],
                query_name="schedules.insert",
            )
        return row["id"]

    def list_schedules(self, plan_id: int, limit: int | None = None) -> List[dict]:
        sql = """
            select id, plan_id, date, time, title, place, place_en, memo
            from schedules
            where plan_id=%s
            order by date, time nulls first, id
        """
        params: list = [plan_id]
        if limit is not None:
            sql += " limit %s"
            params.append(limit)
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name="schedules.list_by_plan")
        return [_iso_dates(r) for r in rows]

    def get_schedule(self, schedule_id: int) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from schedules where id=%s", [schedule_id], query_name="schedules.get")
        return _iso_dates(row)

    def schedule_in_plan(self, plan_id: int, schedule_id: int) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as ok from schedules where id=%s and plan_id=%s",
                [schedule_id, plan_id],
                query_name="schedules.in_plan",
            )
        return row is not None

    def update_schedule(self, plan_id: int, schedule_id: int, changes: dict) -> int:
        sets, values = _set_clause(changes, _SCHEDULE_COLUMNS)
        if not sets:
            return 0
        with get_conn() as conn:
            return execute(
                conn,
                f"update schedules set {sets} where id=%s and plan_id=%s",
                values + [schedule_id, plan_id],
                query_name="schedules.update",
            )

    def delete_schedule(self, plan_id: int, schedule_id: int) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "delete from schedules where id=%s and plan_id=%s",
                [schedule_id, plan_id],
                query_name="schedules.delete",
            )

    # travel memos

    def insert_memo(self, plan_id: int, values: dict, order_index: int = 0) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into travel_memos (plan_id, category, title, content, icon, order_index)
                values (%s, %s, %s, %s, %s, %s)
                returning id
                """,
                [
                    plan_id,
                    values.get("category"),
                    values.get("title"),
                    values.get("content") or None,
                    values.get("icon") or None,
                    order_index,
                ],
                query_name="travel_memos.insert",
            )
        return row["id"]

    def list_memos(self, plan_id: int) -> List[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                "select * from travel_memos where plan_id=%s order by order_index, id",
                [plan_id],
                query_name="travel_memos.list_by_plan",
            )

    def update_memo(self, plan_id: int, memo_id: int, changes: dict) -> int:
        sets, values = _set_clause(changes, _MEMO_COLUMNS)
        if not sets:
            return 0
        with get_conn() as conn:
            return execute(
                conn,
                f"update travel_memos set {sets}, updated_at=now() where id=%s and plan_id=%s",
                values + [memo_id, plan_id],
                query_name="travel_memos.update",
            )

    def delete_memo(self, plan_id: int, memo_id: int) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "delete from travel_memos where id=%s and plan_id=%s",
                [memo_id, plan_id],
                query_name="travel_memos.delete",
            )

    def delete_memos_by_category(self, plan_id: int, categories: Iterable[str]) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "delete from travel_memos where plan_id=%s and category = any(%s)",
                [plan_id, list(categories)],
                query_name="travel_memos.delete_by_category",
            )

    def upsert_memo(self, plan_id: int, values: dict, order_index: int = 0) -> int:
        with get_conn() as conn:
            existing = fetch_one(
                conn,
                "select id from travel_memos where plan_id=%s and category=%s order by id limit 1",
                [plan_id, values.get("category")],
                query_name="travel_memos.find_by_category",
            )
        if existing:
            self.update_memo(
                plan_id,
                existing["id"],
                {
                    "title": values.get("title"),
                    "content": values.get("content") or None,
                    "icon": values.get("icon") or None,
                    "order_index": order_index,
                },
            )
            return existing["id"]
        return self.insert_memo(plan_id, values, order_index=order_index)

    # moments

    def insert_moment(self, schedule_id: int, user_id: int, values: dict) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into moments (schedule_id, user_id, photo_data, note, mood, revisit, rating)
                values (%s, %s, %s, %s, %s, %s, %s)
                returning id
                """,
                [
                    schedule_id,
                    user_id,
                    values.get("photo_data"),
                    values.get("note"),
                    values.get("mood"),
                    values.get("revisit"),
                    values.get("rating"),
                ],
                query_name="moments.insert",
            )
        return row["id"]

    def get_moment(self, moment_id: int) -> dict | None:
        with get_conn() as conn:
            return fetch_one(conn, "select * from moments where id=%s", [moment_id], query_name="moments.get")

    def _moment_scope_sql(self, user_id: Any) -> tuple[str, list]:
        where = "id=%s and schedule_id in (select id from schedules where plan_id=%s)"
        if user_id is None:
            return where, []
        return where + " and user_id=%s", [user_id]

    def update_moment(self, plan_id: int, moment_id: int, changes: dict, user_id: Any = None) -> int:
        sets, values = _set_clause(changes, _MOMENT_COLUMNS)
        if not sets:
            return 0
        where, extra = self._moment_scope_sql(user_id)
        with get_conn() as conn:
            return execute(
                conn,
                f"update moments set {sets} where {where}",
                values + [moment_id, plan_id] + extra,
                query_name="moments.update",
            )

    def delete_moment(self, plan_id: int, moment_id: int, user_id: Any = None) -> int:
        where, extra = self._moment_scope_sql(user_id)
        with get_conn() as conn:
            return execute(
                conn,
                f"delete from moments where {where}",
                [moment_id, plan_id] + extra,
                query_name="moments.delete",
            )

    # members

    def is_member(self, plan_id: Any, user_id: Any) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as ok from plan_members where plan_id=%s and user_id=%s",
                [plan_id, user_id],
                query_name="plan_members.exists",
            )
        return row is not None

    def add_member(self, plan_id: int, user_id: int, role: str = "member") -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into plan_members (plan_id, user_id, role, joined_at)
                values (%s, %s, %s, now())
                on conflict (plan_id, user_id) do nothing
                """,
                [plan_id, user_id, role],
                query_name="plan_members.insert",
            )

    def remove_member(self, plan_id: int, user_id: int) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "delete from plan_members where plan_id=%s and user_id=%s",
                [plan_id, user_id],
                query_name="plan_members.delete",
            )

    def list_members(self, plan_id: int) -> List[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                """
                select pm.user_id, pm.role, pm.joined_at, u.username, u.email
                from plan_members pm
                join users u on u.id = pm.user_id
                where pm.plan_id=%s
                order by pm.joined_at
                """,
                [plan_id],
                query_name="plan_members.list_by_plan",
            )
