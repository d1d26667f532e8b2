from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from botocore.client import BaseClient
from botocore.exceptions import ClientError

from app.services.rate_limiter import RateLimitResult, RateLimiter


@dataclass(frozen=True)
class DynamoRateLimiter(RateLimiter):
    """
    Fixed-window counters in a DynamoDB table shared by every worker.

    Item layout: pk = identifier (e.g. "ip:203.0.113.7"), sk = "route:<key>:window:<seconds>".
    `expires_at` doubles as the table's TTL attribute so finished windows age out.
    """

    client: BaseClient
    table_name: str
    ttl_buffer_seconds: int = 5

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
        limiter_key = self._build_key(route_key, window_seconds)

        window_start = now_ts - (now_ts % window_seconds)
        expires_at = window_start + window_seconds + self.ttl_buffer_seconds

        attributes = self._increment_window(
            key=limiter_key,
            identifier=identifier,
            window_start=window_start,
            expires_at=expires_at,
            route_key=route_key,
            limit=limit,
            window_seconds=window_seconds,
        )

        count = int(attributes.get("count", {}).get("N", "0"))
        allowed = count <= limit
        retry_after = 0
        if not allowed:
            retry_after = max(1, window_start + window_seconds - now_ts)

        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=retry_after,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=window_start + window_seconds,
            limiter_key=f"{identifier}:{limiter_key}",
            window_seconds=window_seconds,
        )

    def _increment_window(
        self,
        *,
        key: str,
        identifier: str,
        window_start: int,
        expires_at: int,
        route_key: str,
        limit: int,
        window_seconds: int,
    ) -> dict[str, Any]:
        item_key = {"pk": {"S": identifier}, "sk": {"S": key}}
        try:
            response = self.client.update_item(
                TableName=self.table_name,
                Key=item_key,
                UpdateExpression=(
                    "SET window_start = :window_start, #count = if_not_exists(#count, :zero) + :inc, "
                    "expires_at = :expires_at, #window_seconds = :window_seconds, "
                    "#request_limit = :request_limit, #route_key = :route_key"
                ),
                # Only keep counting inside the same window; a new window falls through to a reset.
                ConditionExpression="attribute_not_exists(window_start) OR window_start = :window_start",
                ExpressionAttributeNames=_ATTRIBUTE_NAMES,
                ExpressionAttributeValues={
                    **_window_values(window_start, expires_at, route_key, limit, window_seconds),
                    ":inc": {"N": "1"},
                    ":zero": {"N": "0"},
                },
                ReturnValues="ALL_NEW",
            )
            return response.get("Attributes", {})
        except ClientError as err:
            if err.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
            return self._reset_window(
                item_key=item_key,
                window_start=window_start,
                expires_at=expires_at,
                route_key=route_key,
                limit=limit,
                window_seconds=window_seconds,
            )

    def _reset_window(
        self,
        *,
        item_key: dict[str, Any],
        window_start: int,
        expires_at: int,
        route_key: str,
        limit: int,
        window_seconds: int,
    ) -> dict[str, Any]:
        response = self.client.update_item(
            TableName=self.table_name,
            Key=item_key,
            UpdateExpression=(
                "SET window_start = :window_start, #count = :one, expires_at = :expires_at, "
                "#window_seconds = :window_seconds, #request_limit = :request_limit, "
                "#route_key = :route_key"
            ),
            ExpressionAttributeNames=_ATTRIBUTE_NAMES,
            ExpressionAttributeValues={
                **_window_values(window_start, expires_at, route_key, limit, window_seconds),
                ":one": {"N": "1"},
            },
            ReturnValues="ALL_NEW",
        )
        return response.get("Attributes", {})

    @staticmethod
    def _build_key(route_key: str, window_seconds: int) -> str:
        return f"route:{route_key}:window:{window_seconds}"


_ATTRIBUTE_NAMES = {
    "#count": "count",
    "#window_seconds": "window_seconds",
    "#request_limit": "request_limit",
    "#route_key": "route_key",
}


def _window_values(
    window_start: int, expires_at: int, route_key: str, limit: int, window_seconds: int
) -> dict[str, dict[str, str]]:
    return {
        ":window_start": {"N": str(window_start)},
        ":expires_at": {"N": str(expires_at)},
        ":window_seconds": {"N": str(window_seconds)},
        ":request_limit": {"N": str(limit)},
        ":route_key": {"S": route_key},
    }
