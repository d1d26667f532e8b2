from __future__ import annotations

import json
import logging
from typing import Callable

from fastapi import HTTPException, Request, status

from app.core.config import settings
from app.services.rate_limiter import RateLimitResult, get_rate_limiter

logger = logging.getLogger(__name__)


def require_rate_limit(
    route_key: str,
    *,
    limit: int | None = None,
    window_seconds: int | None = None,
) -> Callable:
    resolved_limit = max(1, limit or settings.RATE_LIMIT_DEFAULT_MAX_REQUESTS)
    resolved_window = max(1, window_seconds or settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS)

    async def dependency(request: Request) -> None:
        limiter = get_rate_limiter()
        identifier = _resolve_identifier(request)
        result = limiter.check(
            identifier=identifier,
            route_key=route_key,
            limit=resolved_limit,
            window_seconds=resolved_window,
        )
        _log_decision(request=request, result=result, route_key=route_key)
        if not result.allowed:
            retry_after = max(1, result.retry_after_seconds)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "RATE_LIMITED",
                    "message": "Too many requests",
                    "details": {
                        "retry_after_seconds": retry_after,
                        "limit": result.limit,
                        "remaining": result.remaining,
                    },
                },
                headers={"Retry-After": str(retry_after)},
            )

    return dependency


def _resolve_identifier(request: Request) -> str:
    client = request.client
    peer = (client.host if client else None) or "unknown"

    trusted = settings.TRUSTED_PROXY_IPS
    if peer not in trusted:
        # X-Forwarded-For is client-controlled unless a trusted proxy wrote it.
        return f"ip:{peer}"

    # Walk from the right: the first hop no trusted proxy vouches for is the caller.
    hops = [h.strip() for h in (request.headers.get("x-forwarded-for") or "").split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return f"ip:{hop}"
    return f"ip:{peer}"


def _log_decision(*, request: Request, result: RateLimitResult, route_key: str) -> None:
    if result.allowed and result.count == 0:
        # Noop limiter; nothing worth logging.
        return
    payload = {
        "route": request.url.path,
        "http_method": request.method,
        "route_key": route_key,
        "limiter_key": result.limiter_key,
        "window_seconds": result.window_seconds,
        "limit": result.limit,
        "current_count": result.count,
        "remaining": result.remaining,
        "reset_epoch": result.window_reset_epoch,
        "decision": "allow" if result.allowed else "block",
    }
    logger.info(json.dumps(payload, separators=(",", ":")))
