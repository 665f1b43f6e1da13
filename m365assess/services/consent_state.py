from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from m365assess.core.errors import ConsentStateError


logger = logging.getLogger(__name__)

_NONCE_PREFIX = "m365assess:consent:nonce:"
_nonce_cache: dict[str, float] = {}
_cache_lock = asyncio.Lock()

_redis_pool: Redis | None = None
_redis_url: str | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


@dataclass(frozen=True)
class ConsentState:
    customer_id: str
    client_id: str
    tenant_id: str | None
    issued_at: int
    nonce: str


def generate_nonce() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(16)).rstrip(b"=").decode("utf-8")


def encode_consent_state(
    *,
    customer_id: str,
    client_id: str,
    tenant_id: str | None,
    secret: str,
    issued_at: int | None = None,
    nonce: str | None = None,
) -> str:
    # Sign state payloads so callbacks cannot be forged for arbitrary customers.
    payload = {
        "customerId": customer_id,
        "clientId": client_id,
        "tenantId": tenant_id,
        "iat": int(time.time()) if issued_at is None else int(issued_at),
        "nonce": nonce or generate_nonce(),
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_consent_state(
    token: str,
    *,
    secret: str,
    ttl_seconds: int,
    now: float | None = None,
) -> ConsentState:
    # Verify signature and validity window; single-use is enforced separately.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise ConsentStateError("Invalid consent state format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise ConsentStateError("Invalid consent state encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise ConsentStateError("Invalid consent state signature")
    try:
        payload: Any = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConsentStateError("Invalid consent state payload") from exc
    if not isinstance(payload, dict):
        raise ConsentStateError("Invalid consent state payload")
    customer_id = str(payload.get("customerId") or "")
    client_id = str(payload.get("clientId") or "")
    nonce = str(payload.get("nonce") or "")
    try:
        issued_at = int(payload.get("iat"))
    except (TypeError, ValueError) as exc:
        raise ConsentStateError("Consent state is missing its issue time") from exc
    if not customer_id or not client_id or not nonce:
        raise ConsentStateError("Consent state is missing required fields")
    current = time.time() if now is None else now
    if current - issued_at > ttl_seconds:
        raise ConsentStateError("Consent state has expired")
    return ConsentState(
        customer_id=customer_id,
        client_id=client_id,
        tenant_id=payload.get("tenantId") or None,
        issued_at=issued_at,
        nonce=nonce,
    )


async def get_state_redis(redis_url: str | None) -> Redis | None:
    # Share one Redis client per event loop; None selects the in-memory store.
    if not redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop, _redis_url
    if _redis_pool is not None and _redis_loop == current_loop and _redis_url == redis_url:
        return _redis_pool
    async with _redis_lock:
        if _redis_pool is None or _redis_loop != current_loop or _redis_url != redis_url:
            _redis_pool = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
            _redis_url = redis_url
    return _redis_pool


async def claim_state_nonce(nonce: str, *, ttl_seconds: int, redis_url: str | None = None) -> bool:
    """Mark a consent nonce as used, returning False when it was already claimed."""
    redis = await get_state_redis(redis_url)
    if redis is not None:
        try:
            claimed = await redis.set(f"{_NONCE_PREFIX}{nonce}", "1", ex=max(ttl_seconds, 1), nx=True)
            return bool(claimed)
        except RedisError as exc:
            logger.warning("consent_nonce_redis_unavailable error=%s", type(exc).__name__)
    now = time.time()
    async with _cache_lock:
        # Drop expired entries so the fallback store stays bounded.
        for key in [key for key, expires_at in _nonce_cache.items() if expires_at <= now]:
            _nonce_cache.pop(key, None)
        if nonce in _nonce_cache:
            return False
        _nonce_cache[nonce] = now + ttl_seconds
    return True
