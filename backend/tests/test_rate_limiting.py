from __future__ import annotations

import json
import logging

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.core import config as app_config
from app.dependencies import rate_limit as rate_limit_dependency
from app.services.rate_limiter import (
    InMemoryRateLimiter,
    NoopRateLimiter,
    RateLimitResult,
    get_rate_limiter,
    reset_rate_limiter,
)
from app.services.rate_limiter_dynamo import DynamoRateLimiter


class _StubLimiter:
    def __init__(self, allow_until: int):
        self.allow_until = allow_until
        self.calls = 0

    def check(self, *, identifier: str, route_key: str, limit: int, window_seconds: int, now: int | None = None):
        self.calls += 1
        allowed = self.calls <= self.allow_until
        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=0 if allowed else 5,
            limit=limit,
            remaining=max(0, limit - self.calls),
            count=self.calls,
            window_reset_epoch=60,
            limiter_key=f"{identifier}:route:{route_key}:window:{window_seconds}",
            window_seconds=window_seconds,
        )


@pytest.fixture()
def limited_app(monkeypatch):
    limiter = _StubLimiter(allow_until=2)
    monkeypatch.setattr(rate_limit_dependency, "get_rate_limiter", lambda: limiter)

    app = FastAPI()
    dependency = rate_limit_dependency.require_rate_limit("test_route", limit=2, window_seconds=60)

    @app.get("/limited", dependencies=[Depends(dependency)])
    def _limited():
        return {"ok": True}

    return TestClient(app)


def test_in_memory_limiter_blocks_after_limit():
    limiter = InMemoryRateLimiter()
    results = [
        limiter.check(identifier="ip:1.2.3.4", route_key="r", limit=2, window_seconds=60, now=1_000)
        for _ in range(3)
    ]

    assert [r.allowed for r in results] == [True, True, False]
    assert results[0].remaining == 1
    assert results[2].retry_after_seconds == 1_020 - 1_000
    assert results[2].window_reset_epoch == 1_020


def test_in_memory_limiter_resets_on_next_window():
    limiter = InMemoryRateLimiter()
    for _ in range(3):
        limiter.check(identifier="ip:1", route_key="r", limit=2, window_seconds=60, now=1_000)

    later = limiter.check(identifier="ip:1", route_key="r", limit=2, window_seconds=60, now=1_020)
    assert later.allowed is True
    assert later.count == 1


def test_in_memory_limiter_keys_by_identifier_and_route():
    limiter = InMemoryRateLimiter()
    limiter.check(identifier="ip:1", route_key="a", limit=1, window_seconds=60, now=1_000)

    assert limiter.check(identifier="ip:2", route_key="a", limit=1, window_seconds=60, now=1_000).allowed
    assert limiter.check(identifier="ip:1", route_key="b", limit=1, window_seconds=60, now=1_000).allowed
    assert not limiter.check(identifier="ip:1", route_key="a", limit=1, window_seconds=60, now=1_000).allowed


def test_limiter_selection_follows_settings(monkeypatch):
    monkeypatch.setattr(app_config.settings, "RATE_LIMIT_ENABLED", False)
    reset_rate_limiter()
    assert isinstance(get_rate_limiter(), NoopRateLimiter)

    monkeypatch.setattr(app_config.settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "DDB_RATE_LIMIT_TABLE", "")
    reset_rate_limiter()
    assert isinstance(get_rate_limiter(), InMemoryRateLimiter)


def test_enabled_limiter_uses_dynamo_when_table_configured(monkeypatch):
    monkeypatch.setattr(app_config.settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "DDB_RATE_LIMIT_TABLE", "verification-rate-limits")
    monkeypatch.setattr(app_config.settings, "AWS_REGION", "us-east-1")
    reset_rate_limiter()

    limiter = get_rate_limiter()
    assert isinstance(limiter, DynamoRateLimiter)
    assert limiter.table_name == "verification-rate-limits"


def test_prod_without_table_disables_limiter(monkeypatch, caplog):
    caplog.set_level(logging.WARNING, logger="app.services.rate_limiter")
    monkeypatch.setattr(app_config.settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(app_config.settings, "DDB_RATE_LIMIT_TABLE", "")
    monkeypatch.setattr(app_config.settings, "ENV", "prod")
    reset_rate_limiter()

    assert isinstance(get_rate_limiter(), NoopRateLimiter)
    assert any("DDB_RATE_LIMIT_TABLE is unset" in r.getMessage() for r in caplog.records)


def test_in_memory_limiter_drops_closed_windows():
    limiter = InMemoryRateLimiter()
    for i in range(50):
        limiter.check(identifier=f"ip:10.0.0.{i}", route_key="r", limit=1, window_seconds=60, now=1_000)
    assert len(limiter._counts) == 50

    limiter.check(identifier="ip:10.0.0.1", route_key="r", limit=1, window_seconds=60, now=1_020)
    assert len(limiter._counts) == 1


def test_rate_limit_logs_allow_and_block(caplog, limited_app: TestClient):
    caplog.set_level(logging.INFO, logger="app.dependencies.rate_limit")

    first = limited_app.get("/limited")
    second = limited_app.get("/limited")
    third = limited_app.get("/limited")

    assert first.status_code == 200
    assert second.status_code == 200
    assert third.status_code == 429
    assert third.headers["Retry-After"] == "5"

    records = [
        json.loads(record.message)
        for record in caplog.records
        if record.name == "app.dependencies.rate_limit"
    ]
    assert len(records) == 3
    assert [r["decision"] for r in records] == ["allow", "allow", "block"]
    assert records[0]["route_key"] == "test_route"


class _PinnedClockLimiter(InMemoryRateLimiter):
    def check(self, *, identifier: str, route_key: str, limit: int, window_seconds: int, now: int | None = None):
        return super().check(
            identifier=identifier, route_key=route_key, limit=limit, window_seconds=window_seconds, now=1_000
        )


def test_two_factor_verify_is_rate_limited(client: TestClient, users, monkeypatch):
    limiter = _PinnedClockLimiter()
    monkeypatch.setattr(rate_limit_dependency, "get_rate_limiter", lambda: limiter)
    _, user = users

    statuses = [
        client.post("/auth/two-factor/verify", json={"user_id": user.id, "code": "000000"}).status_code
        for _ in range(11)
    ]

    assert statuses[:10] == [400] * 10
    assert statuses[10] == 429
    blocked = client.post("/auth/two-factor/verify", json={"user_id": user.id, "code": "000000"})
    assert blocked.json()["error"] == "RATE_LIMITED"
    assert int(blocked.headers["Retry-After"]) >= 1


def _post_with_rotating_forwarded_for(client: TestClient, user_id: str, attempts: int) -> list[int]:
    return [
        client.post(
            "/auth/two-factor/verify",
            json={"user_id": user_id, "code": "000000"},
            headers={"X-Forwarded-For": f"10.0.0.{i}"},
        ).status_code
        for i in range(attempts)
    ]


def test_forwarded_for_from_untrusted_peer_cannot_dodge_limit(client: TestClient, users, monkeypatch):
    limiter = _PinnedClockLimiter()
    monkeypatch.setattr(rate_limit_dependency, "get_rate_limiter", lambda: limiter)
    _, user = users

    statuses = _post_with_rotating_forwarded_for(client, user.id, 12)

    assert statuses[:10] == [400] * 10
    assert statuses[10:] == [429, 429]


def test_forwarded_for_honored_behind_trusted_proxy(client: TestClient, users, monkeypatch):
    limiter = _PinnedClockLimiter()
    monkeypatch.setattr(rate_limit_dependency, "get_rate_limiter", lambda: limiter)
    # TestClient reports its peer address as "testclient".
    app_config.settings.TRUSTED_PROXY_IPS = ["testclient"]
    _, user = users

    statuses = _post_with_rotating_forwarded_for(client, user.id, 12)

    assert 429 not in statuses
    assert {k.split(":route:")[0] for k in limiter._counts} == {f"ip:10.0.0.{i}" for i in range(12)}


def test_trusted_proxy_uses_rightmost_untrusted_hop(client: TestClient, users, monkeypatch):
    limiter = _PinnedClockLimiter()
    monkeypatch.setattr(rate_limit_dependency, "get_rate_limiter", lambda: limiter)
    app_config.settings.TRUSTED_PROXY_IPS = ["testclient", "10.1.1.1"]
    _, user = users

    client.post(
        "/auth/two-factor/verify",
        json={"user_id": user.id, "code": "000000"},
        headers={"X-Forwarded-For": "6.6.6.6, 198.51.100.4, 10.1.1.1"},
    )

    assert [k.split(":route:")[0] for k in limiter._counts] == ["ip:198.51.100.4"]
