"""
Rate limiting tests.

Counters live in the database, so limits hold across app instances. The
suite disables limiting by default; these tests switch it back on.
"""

from datetime import timedelta

import pytest

from murimi_pos.models import RateLimitCounter
from murimi_pos.services import rate_limit_service
from murimi_pos.time_utils import utcnow


@pytest.fixture
def limited(app, monkeypatch):
    monkeypatch.setitem(app.config, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setitem(app.config, "RATE_LIMIT_MAX_REQUESTS", 3)
    monkeypatch.setitem(app.config, "RATE_LIMIT_WINDOW_SECONDS", 60)


def test_fourth_request_in_window_is_refused(client, cashier_headers, limited):
    for _ in range(3):
        assert client.get("/api/products", headers=cashier_headers).status_code == 200

    resp = client.get("/api/products", headers=cashier_headers)

    assert resp.status_code == 429
    assert resp.json == {"success": False, "error": "Too many requests. Please try again later."}
    assert 1 <= int(resp.headers["Retry-After"]) <= 60
    assert resp.headers["X-RateLimit-Remaining"] == "0"


def test_clients_are_counted_separately(client, cashier_headers, limited):
    for _ in range(3):
        client.get("/api/products", headers=cashier_headers)

    other = dict(cashier_headers, **{"X-Forwarded-For": "10.0.0.8"})
    assert client.get("/api/products", headers=other).status_code == 200


def test_health_and_gateway_callback_are_exempt(client, limited):
    for _ in range(5):
        assert client.get("/api/health").status_code == 200
    for _ in range(5):
        assert client.post("/api/mpesa/callback", json={}).status_code == 400


def test_expired_window_starts_over(db_session):
    db_session.add(RateLimitCounter(key="ip:10.0.0.9", count=3, window_expires_at=utcnow() - timedelta(seconds=1)))
    db_session.commit()

    result = rate_limit_service.check_rate_limit("ip:10.0.0.9", max_requests=3, window_seconds=60)

    assert result.allowed is True
    assert result.remaining == 2


def test_purge_expired(db_session):
    now = utcnow()
    db_session.add_all([
        RateLimitCounter(key="old", count=1, window_expires_at=now - timedelta(minutes=5)),
        RateLimitCounter(key="live", count=1, window_expires_at=now + timedelta(minutes=5)),
    ])
    db_session.commit()

    assert rate_limit_service.purge_expired(now) == 1
    assert [c.key for c in db_session.query(RateLimitCounter).all()] == ["live"]
