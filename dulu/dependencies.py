from __future__ import annotations

import hashlib
import hmac
import logging

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel
from redis.exceptions import RedisError

from dulu.config import Settings
from dulu.errors import ProviderError
from dulu.models import ErrorCode
from dulu.services.pawapay import PawaPayClient

settings = Settings()
redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


def client_ip(request: Request) -> str:
    """Resolve the caller IP, trusting X-Forwarded-For only behind our proxies."""
    client_host = request.client.host if request.client else ""
    xff = request.headers.get("X-Forwarded-For")
    if xff and client_host in settings.trusted_proxies:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if forwarded and all(p in settings.trusted_proxies for p in proxies):
            return forwarded[0]
    return client_host


async def require_api_headers(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> str:
    if x_api_ver is None:
        err = ErrorResponse(code=ErrorCode.UPGRADE_REQUIRED, message="Missing API version")
        raise HTTPException(status_code=426, detail=err.model_dump())

    if x_api_ver != "v1":
        err = ErrorResponse(code=ErrorCode.UPGRADE_REQUIRED, message="Invalid API version")
        raise HTTPException(status_code=426, detail=err.model_dump())

    if not hmac.compare_digest(x_api_key, settings.api_key):
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="Invalid API key")
        raise HTTPException(status_code=401, detail=err.model_dump())

    if not x_user_id:
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="Missing user ID")
        raise HTTPException(status_code=401, detail=err.model_dump())

    return x_user_id


async def rate_limit(request: Request, user_id: str = Depends(require_api_headers)) -> str:
    """Throttle requests by IP and user via Redis."""
    ip_key = f"rate:ip:{client_ip(request)}"
    user_key = f"rate:user:{user_id}"

    try:
        pipe = redis_client.pipeline()
        pipe.incr(ip_key)
        pipe.expire(ip_key, 60)
        pipe.incr(user_key)
        pipe.expire(user_key, 60)
        ip_count, _, user_count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for rate limiting: %s", exc)
        err = ErrorResponse(
            code=ErrorCode.SERVICE_UNAVAILABLE, message="Rate limiter unavailable"
        )
        raise HTTPException(status_code=503, detail=err.model_dump()) from exc
    if ip_count > 30 or user_count > 120:
        err = ErrorResponse(code=ErrorCode.TOO_MANY_REQUESTS, message="Rate limit exceeded")
        raise HTTPException(status_code=429, detail=err.model_dump())

    return user_id


def verify_signature(sig_header: str | None, body: bytes, secret: str) -> bool:
    """Return ``True`` if the HMAC-SHA256 hex digest of ``body`` matches."""
    if not sig_header:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, sig_header)


def get_pawapay_client() -> PawaPayClient:
    try:
        return PawaPayClient.from_settings(settings)
    except ProviderError as exc:
        logger.error("PawaPay client unavailable: %s", exc)
        err = ErrorResponse(code=ErrorCode.SERVICE_UNAVAILABLE, message=exc.message)
        raise HTTPException(status_code=503, detail=err.model_dump()) from exc
