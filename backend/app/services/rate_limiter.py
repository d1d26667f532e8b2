from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import boto3

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    count: int
    window_reset_epoch: int
    limiter_key: str
    window_seconds: int


class RateLimiter(Protocol):
    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        ...


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off.
    """

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        reset_epoch = now_ts + window_seconds
        limiter_key = f"noop:{route_key}:window:{window_seconds}"
        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit),
            count=0,
            window_reset_epoch=reset_epoch,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )


class InMemoryRateLimiter:
    """
    Fixed-window counter per (identifier, route, window). Process-local, so limits
    apply per worker; local development and tests only.
    """

    def __init__(self) -> None:
        # limiter_key -> (window_start, count, window_reset_epoch)
        self._counts: dict[str, tuple[int, int, int]] = {}
        self._lock = threading.Lock()

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        window_start = now_ts - (now_ts % window_seconds)
        reset_epoch = window_start + window_seconds
        limiter_key = f"{identifier}:route:{route_key}:window:{window_seconds}"

        with self._lock:
            self._evict_closed_windows(now_ts)
            started, count, _ = self._counts.get(limiter_key, (window_start, 0, reset_epoch))
            if started != window_start:
                count = 0
            count += 1
            self._counts[limiter_key] = (window_start, count, reset_epoch)

        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=0 if allowed else max(1, reset_epoch - now_ts),
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=reset_epoch,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def _evict_closed_windows(self, now_ts: int) -> None:
        stale = [k for k, (_, _, reset_epoch) in self._counts.items() if reset_epoch <= now_ts]
        for k in stale:
            del self._counts[k]


_limiter: RateLimiter | None = None
_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is not None:
        return _limiter
    with _lock:
        if _limiter is None:
            _limiter = _build_rate_limiter()
    return _limiter


def reset_rate_limiter() -> None:
    """
    Test helper to ensure a fresh limiter instance is constructed after settings change.
    """

    global _limiter
    with _lock:
        _limiter = None


def _build_rate_limiter() -> RateLimiter:
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled via RATE_LIMIT_ENABLED=false; using NoopRateLimiter")
        return NoopRateLimiter()

    table_name = settings.DDB_RATE_LIMIT_TABLE
    region = settings.AWS_REGION
    if table_name and region:
        from app.services.rate_limiter_dynamo import DynamoRateLimiter

        client = boto3.client("dynamodb", region_name=region)
        logger.info("Rate limiting enabled using DynamoDB table %s in %s", table_name, region)
        return DynamoRateLimiter(client, table_name=table_name)

    missing = "DDB_RATE_LIMIT_TABLE" if not table_name else "AWS_REGION"
    if settings.is_prod:
        logger.warning("RATE_LIMIT_ENABLED=true but %s is unset; disabling limiter", missing)
        return NoopRateLimiter()

    logger.warning("RATE_LIMIT_ENABLED=true but %s is unset; using in-process limiter (dev only)", missing)
    return InMemoryRateLimiter()
