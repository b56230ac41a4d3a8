"""Tripmate API: plan assistant, advisor chat and memo generation."""

from __future__ import annotations

import os
import re
import sys
import time
import logging
from pathlib import Path
from typing import Any

import anyio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from assistant_exec import execute_actions
from assistant_reply import assemble_response, parse_completion
from tripmate.lang import detect_language
from app.access import AccessLevel, can_use_assistant, evaluate_access
from app.auth import get_credential, resolve_request_user
from app.completion import CompletionClient, CompletionConfig, CompletionError, client_from_env
from app.db import get_db_stats, reset_db_stats
from app.memos import threaded_memo_generator
from app.prompt import build_advisor_messages, build_assistant_messages, default_language
from app.stores import InMemoryTxManager, MemoryTripStore


app = FastAPI(title="Tripmate API")
logger = logging.getLogger("tripmate")
logging.basicConfig(level=logging.INFO)

_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("TRIPMATE_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

USE_DB = os.getenv("USE_DB", "").strip() == "1"
REQ_SLOW_MS = float(os.getenv("TRIPMATE_REQ_SLOW_MS", "2000"))

ASSISTANT_CONFIG = CompletionConfig(temperature=0.7, max_output_tokens=2000, json_mode=True)
ADVISOR_CONFIG = CompletionConfig(temperature=0.7, max_output_tokens=1500)

if USE_DB:
    from app.stores_db import DbTripStore, DbTxManager

    _store: Any = DbTripStore()
    _tx_mgr: Any = DbTxManager()
else:
    _store = MemoryTripStore()
    _tx_mgr = InMemoryTxManager()

logger.info("store_backend=%s", "postgres" if USE_DB else "memory")


def _get_completion_client() -> CompletionClient | None:
    return client_from_env()


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    logger.info(
        "request_done method=%s path=%s status=%s ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning("slow_request method=%s path=%s total_ms=%.1f", request.method, request.url.path, total_ms)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=_LOCAL_CORS_REGEX.pattern,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "error": {"code": code, "message": message},
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", status=500)


async def _read_json(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _coerce_plan_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.post("/api/assistant")
async def assistant(request: Request) -> JSONResponse:
    if not get_credential(request):
        return _error_response("AUTH_REQUIRED", "Authentication required", status=401)

    body = await _read_json(request)
    if body is None:
        return _error_response("BAD_REQUEST", "Request body must be a JSON object", status=400)
    if not _has_text(body.get("message")) and not _has_text(body.get("image")):
        return _error_response("MESSAGE_REQUIRED", "Message or image is required", path="message", status=400)
    plan_id = _coerce_plan_id(body.get("planId"))
    if plan_id is None:
        return _error_response("PLAN_REQUIRED", "planId must be an integer", path="planId", status=400)

    user = await anyio.to_thread.run_sync(resolve_request_user, request, _store)
    user_id = user.get("id") if user else None
    access = await anyio.to_thread.run_sync(evaluate_access, _store, plan_id, user_id)
    if not can_use_assistant(access):
        logger.info("assistant_access_denied plan_id=%s user_id=%s access=%s", plan_id, user_id, access.value)
        return _error_response("ACCESS_DENIED", "Access denied", status=403)

    client = _get_completion_client()
    if client is None:
        logger.error("assistant_not_configured")
        return _error_response("ASSISTANT_NOT_CONFIGURED", "AI Assistant is not configured", status=500)

    try:
        raw = await client.complete(build_assistant_messages(body, access, user=user), ASSISTANT_CONFIG)
    except CompletionError as exc:
        return _error_response("ASSISTANT_FAILED", str(exc), status=500)

    parsed = parse_completion(raw)
    plan = await anyio.to_thread.run_sync(_store.get_plan, plan_id)
    region = (plan or {}).get("region") or body.get("planRegion") or ""
    language = detect_language(body.get("message"), default=default_language())
    ctx = {
        "plan_id": plan_id,
        "user_id": user_id,
        "user_email": user.get("email") if user else None,
        "access": access,
    }
    deps = {
        "tx": _tx_mgr,
        "store": _store,
        "memos": threaded_memo_generator(client, _store, region, language),
    }
    results = await anyio.to_thread.run_sync(execute_actions, parsed.actions, ctx, deps)
    if results:
        failed = sum(1 for r in results if not r.success)
        logger.info("assistant_actions plan_id=%s total=%s failed=%s", plan_id, len(results), failed)
    return _ok_response(assemble_response(parsed.reply, results))


@app.post("/api/assistant/chat")
async def assistant_chat(request: Request) -> JSONResponse:
    body = await _read_json(request)
    if body is None or not _has_text(body.get("message")):
        return _error_response("MESSAGE_REQUIRED", "Message is required", path="message", status=400)

    client = _get_completion_client()
    if client is None:
        return _error_response("ASSISTANT_NOT_CONFIGURED", "AI Assistant is not configured", status=500)
    try:
        reply = await client.complete(build_advisor_messages(body), ADVISOR_CONFIG)
    except CompletionError as exc:
        return _error_response("ASSISTANT_FAILED", str(exc), status=500)
    return _ok_response({"reply": reply})


def _run_in_tx(fn, *args):
    """Run ``fn`` on the current worker thread inside one store transaction."""
    tx = _tx_mgr.begin()
    try:
        result = fn(*args)
    except Exception:
        tx.rollback()
        raise
    tx.commit()
    return result


@app.post("/api/plans/{plan_id}/memos/generate")
async def generate_memos(plan_id: int, request: Request) -> JSONResponse:
    if not get_credential(request):
        return _error_response("AUTH_REQUIRED", "Authentication required", status=401)
    user = await anyio.to_thread.run_sync(resolve_request_user, request, _store)
    user_id = user.get("id") if user else None
    plan = await anyio.to_thread.run_sync(_store.get_plan, plan_id)
    if not plan:
        return _error_response("PLAN_NOT_FOUND", "Plan not found", status=404)
    access = await anyio.to_thread.run_sync(evaluate_access, _store, plan_id, user_id)
    if access != AccessLevel.OWNER:
        return _error_response("ACCESS_DENIED", "Only the plan owner can generate memos", status=403)

    body = await _read_json(request) or {}
    region = body.get("region") if _has_text(body.get("region")) else plan.get("region")
    if not _has_text(region):
        return _error_response("REGION_REQUIRED", "Region is required", path="region", status=400)

    client = _get_completion_client()
    if client is None:
        return _error_response("ASSISTANT_NOT_CONFIGURED", "AI Assistant is not configured", status=500)
    generate = threaded_memo_generator(client, _store, region.strip(), default_language())
    try:
        count = await anyio.to_thread.run_sync(_run_in_tx, generate, plan_id)
    except (CompletionError, ValueError) as exc:
        logger.warning("memos_generate_failed plan_id=%s error=%s", plan_id, exc)
        return _error_response("MEMO_GENERATION_FAILED", "Failed to generate memos", status=500)
    return _ok_response({"count": count})
