"""
ChatShop - Idempotency Key Middleware

Order placement retried with the same Idempotency-Key returns the first
successful answer instead of placing the order again. Only 2xx responses are
remembered; a rejected attempt (empty cart, missing address, stock shortage)
can be retried once the customer fixes the cause.
"""
import json
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from chatshop.core.config import get_settings
from chatshop.core.redis_client import get_redis

settings = get_settings()

IDEMPOTENCY_PREFIX = "idempotent:"
IDEMPOTENCY_METHODS = {"POST", "PUT", "PATCH"}
IDEMPOTENCY_PATHS = {"/bot/orders", "/bot/orders/"}
REPLAY_HEADER = "X-Idempotency-Replay"


def _guarded_key(request: Request) -> str | None:
    if request.method not in IDEMPOTENCY_METHODS or request.url.path not in IDEMPOTENCY_PATHS:
        return None
    key = request.headers.get("Idempotency-Key")
    return f"{IDEMPOTENCY_PREFIX}{key}" if key else None


def _replay(cached: str) -> Response:
    data = json.loads(cached)
    return JSONResponse(
        content=data["body"],
        status_code=data["status_code"],
        headers={REPLAY_HEADER: "true"},
    )


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _decode_body(body_bytes: bytes):
    try:
        return json.loads(body_bytes)
    except ValueError:
        return body_bytes.decode("utf-8", errors="replace")


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        cache_key = _guarded_key(request)
        if cache_key is None:
            return await call_next(request)

        redis = get_redis()
        cached = await redis.get(cache_key)
        if cached:
            return _replay(cached)

        response = await call_next(request)
        body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        if _is_success(response.status_code):
            await redis.setex(
                cache_key,
                settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                json.dumps({"body": _decode_body(body_bytes), "status_code": response.status_code}),
            )

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
