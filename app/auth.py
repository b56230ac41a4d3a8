"""Credential resolution for Google and guest sign-ins."""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError, JWTError
from starlette.requests import Request


CREDENTIAL_HEADER = "X-Auth-Credential"
GUEST_PREFIX = "guest_"
GOOGLE_ISSUERS = ["https://accounts.google.com", "accounts.google.com"]
GOOGLE_ALGORITHMS = ["RS256"]

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
logger = logging.getLogger("tripmate.auth")


def _verify_enabled() -> bool:
    return os.getenv("TRIPMATE_AUTH_VERIFY", "1").strip().lower() not in ("0", "false", "no")


def _jwks_url() -> str:
    return os.getenv("GOOGLE_JWKS_URL", "").strip() or "https://www.googleapis.com/oauth2/v3/certs"


def _audience() -> Optional[str]:
    return os.getenv("GOOGLE_CLIENT_ID", "").strip() or None


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _verify_jwt(token: str, jwks_url: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = None
    for attempt in (False, True):
        jwks = _fetch_jwks(jwks_url, force=attempt)
        key = next((jwk for jwk in jwks.get("keys", []) if jwk.get("kid") == kid), None)
        if key is not None:
            break
    if key is None:
        raise JWTError("Unknown kid")

    options = {"verify_aud": audience is not None}
    return jwt.decode(
        token,
        key,
        algorithms=GOOGLE_ALGORITHMS,
        issuer=GOOGLE_ISSUERS,
        audience=audience,
        options=options,
    )


def _decode_plain(token: str) -> dict:
    padded = token + "=" * (-len(token) % 4)
    return json.loads(base64.b64decode(padded).decode("utf-8"))


def decode_credential(token: str, verify: bool | None = None) -> dict | None:
    """Return the credential's claims, or None when it cannot be trusted.

    Three-segment tokens are JWTs; anything else is a base64 JSON guest
    credential. With verification on, only signed JWTs are accepted.
    """
    if verify is None:
        verify = _verify_enabled()
    if not isinstance(token, str) or not token.strip():
        return None
    token = token.strip()
    try:
        if token.count(".") == 2:
            if verify:
                claims = _verify_jwt(token, _jwks_url(), _audience())
            else:
                claims = jwt.get_unverified_claims(token)
        elif verify:
            logger.info("auth_unsigned_credential_rejected")
            return None
        else:
            claims = _decode_plain(token)
    except (JOSEError, ValueError, httpx.HTTPError) as exc:
        logger.warning("auth_invalid_credential error=%s", exc)
        return None
    return claims if isinstance(claims, dict) else None


def get_credential(request: Request) -> Optional[str]:
    credential = request.headers.get(CREDENTIAL_HEADER)
    if credential and credential.strip():
        return credential.strip()
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


def user_from_claims(claims: dict | None, store: Any) -> dict | None:
    sub = (claims or {}).get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    if sub.startswith(GUEST_PREFIX):
        raw_id = sub[len(GUEST_PREFIX):]
        if not raw_id.isdigit():
            return None
        return store.get_guest_user(int(raw_id))
    return store.get_user_by_google_id(sub)


def resolve_request_user(request: Request, store: Any) -> dict | None:
    """Map the request's credential to a user row; anonymous is None."""
    token = get_credential(request)
    if not token:
        return None
    return user_from_claims(decode_credential(token), store)
