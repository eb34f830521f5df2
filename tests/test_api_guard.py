"""Tests for the API guard: credential validation, scopes, rate limiting."""

from datetime import timedelta

import pytest
from fastapi import Request
from sqlalchemy import select, update

from fingate.models.api_key import ApiKey, ApiUsageLog, RateLimitWindow
from fingate.models.base import utcnow
from fingate.services.api_guard import ApiGuard, authorize_scope
from fingate.services.api_key_service import generate_api_key
from fingate.tasks import drain


def bearer(key: str) -> dict:
    return {"Authorization": f"Bearer {key}"}


def guarded_request(key: str, method: str = "GET", path: str = "/v1/reports") -> Request:
    """Bare request for calling handle_request without a router."""
    return Request({
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("test", 80),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(b"authorization", f"Bearer {key}".encode())],
    })


class TestValidateCredential:
    """Tests for ApiGuard.validate_credential."""

    async def test_valid_key(self, session_factory, make_api_key) -> None:
        """A known active key resolves to its record."""
        key, api_key = await make_api_key()
        guard = ApiGuard(session_factory)

        found = await guard.validate_credential(key)

        assert found is not None
        assert found.id == api_key.id

    @pytest.mark.parametrize("presented", [None, "", "fk_short"])
    async def test_missing_or_short_key(self, session_factory, presented) -> None:
        """Absent or too-short credentials never reach the store."""
        guard = ApiGuard(session_factory)
        assert await guard.validate_credential(presented) is None

    async def test_unknown_key(self, session_factory, make_api_key) -> None:
        """Only an exact match on the full key is accepted."""
        key, _ = await make_api_key()
        guard = ApiGuard(session_factory)

        tampered = key[:-1] + ("a" if key[-1] != "a" else "b")

        assert await guard.validate_credential(tampered) is None
        assert await guard.validate_credential(generate_api_key()) is None

    async def test_inactive_key(self, session_factory, make_api_key) -> None:
        """Deactivated keys are rejected even with the correct plaintext."""
        key, api_key = await make_api_key()
        async with session_factory() as db:
            await db.execute(update(ApiKey).where(ApiKey.id == api_key.id).values(is_active=False))
            await db.commit()

        assert await ApiGuard(session_factory).validate_credential(key) is None

    async def test_expired_key(self, session_factory, make_api_key) -> None:
        """Keys past their expiry are rejected."""
        key, api_key = await make_api_key()
        async with session_factory() as db:
            await db.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key.id)
                .values(expires_at=utcnow() - timedelta(days=1))
            )
            await db.commit()

        assert await ApiGuard(session_factory).validate_credential(key) is None

    async def test_key_expiring_in_future_is_valid(self, session_factory, make_api_key) -> None:
        key, _ = await make_api_key(expires_in_days=30)
        assert await ApiGuard(session_factory).validate_credential(key) is not None

    async def test_last_used_is_updated(self, session_factory, make_api_key, clock) -> None:
        """Successful validation stamps last_used_at in the background."""
        key, api_key = await make_api_key()
        guard = ApiGuard(session_factory, clock=clock)

        await guard.validate_credential(key)
        await drain()

        async with session_factory() as db:
            refreshed = await db.get(ApiKey, api_key.id)
        assert refreshed.last_used_at is not None
        assert refreshed.last_used_at.replace(tzinfo=None) == clock.now.replace(tzinfo=None)

    async def test_lookup_failure_is_treated_as_missing(self) -> None:
        """A store error yields None rather than raising."""

        def broken_session_factory():
            raise RuntimeError("database unavailable")

        guard = ApiGuard(broken_session_factory)
        assert await guard.validate_credential(generate_api_key()) is None


class TestAuthorizeScope:
    """Tests for authorize_scope."""

    @pytest.mark.parametrize(
        "scopes,required,expected",
        [
            (["read"], "read", True),
            (["read"], "write", False),
            (["read", "write"], "write", True),
            (["*"], "write", True),
            (["*"], "admin", True),
            ([], "read", False),
            (None, "read", False),
        ],
    )
    def test_scope_matrix(self, scopes, required, expected) -> None:
        api_key = ApiKey(scopes=scopes)
        assert authorize_scope(api_key, required) is expected


class TestHandleRequest:
    """Tests for the guard in front of the v1 routes."""

    async def test_missing_key_is_401(self, client) -> None:
        response = await client.get("/v1/transactions")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized", "message": "Invalid or missing API key"}

    async def test_wrong_scheme_is_401(self, client, make_api_key) -> None:
        key, _ = await make_api_key()
        response = await client.get("/v1/transactions", headers={"Authorization": f"Token {key}"})
        assert response.status_code == 401

    async def test_unknown_key_is_401(self, client) -> None:
        response = await client.get("/v1/transactions", headers=bearer(generate_api_key()))
        assert response.status_code == 401

    async def test_missing_scope_is_403(self, client, make_api_key) -> None:
        """A read-only key cannot call a write endpoint."""
        key, _ = await make_api_key(scopes=["read"])

        response = await client.post(
            "/v1/transactions",
            headers=bearer(key),
            json={"amount": 10, "type": "expense", "date": "2026-10-01"},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden", "message": "Required scope: write"}

    async def test_wildcard_scope_allows_write(self, client, make_api_key) -> None:
        key, _ = await make_api_key(scopes=["*"])

        response = await client.post(
            "/v1/transactions",
            headers=bearer(key),
            json={"amount": 10, "type": "expense", "date": "2026-10-01"},
        )

        assert response.status_code == 201

    async def test_success_carries_rate_limit_headers(self, client, make_api_key) -> None:
        key, _ = await make_api_key(rate_limit=5)

        first = await client.get("/v1/transactions", headers=bearer(key))
        second = await client.get("/v1/transactions", headers=bearer(key))

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "5"
        assert first.headers["X-RateLimit-Remaining"] == "4"
        assert second.headers["X-RateLimit-Remaining"] == "3"

    async def test_rate_limit_window(self, app, client, session_factory, make_api_key, clock) -> None:
        """Five requests pass, the sixth is throttled, a new window resets."""
        app.state.api_guard = ApiGuard(session_factory, clock=clock)
        key, _ = await make_api_key(rate_limit=5)

        for _ in range(5):
            response = await client.get("/v1/transactions", headers=bearer(key))
            assert response.status_code == 200
            clock.advance(2)

        throttled = await client.get("/v1/transactions", headers=bearer(key))
        assert throttled.status_code == 429
        assert throttled.headers["Retry-After"] == "60"
        assert throttled.headers["X-RateLimit-Remaining"] == "0"
        assert throttled.json()["error"] == "Too Many Requests"

        clock.advance(60)

        fresh = await client.get("/v1/transactions", headers=bearer(key))
        assert fresh.status_code == 200
        assert fresh.headers["X-RateLimit-Remaining"] == "4"

    async def test_throttling_is_per_route_template(self, client, make_api_key) -> None:
        """Methods on one path share a counter; another template has its own."""
        key, _ = await make_api_key(rate_limit=1)

        assert (await client.get("/v1/transactions", headers=bearer(key))).status_code == 200
        assert (await client.get("/v1/transactions", headers=bearer(key))).status_code == 429

        same_path = await client.post(
            "/v1/transactions",
            headers=bearer(key),
            json={"amount": 10, "type": "income", "date": "2026-10-01"},
        )
        assert same_path.status_code == 429

        other_template = await client.put(
            "/v1/transactions/does-not-exist",
            headers=bearer(key),
            json={"amount": 5},
        )
        assert other_template.status_code == 404
        assert other_template.headers["X-RateLimit-Remaining"] == "0"

    async def test_explicit_ceiling_overrides_key_limit(self, session_factory, make_api_key) -> None:
        key, _ = await make_api_key(rate_limit=60)
        guard = ApiGuard(session_factory)

        async def handler(request, auth):
            return {"ok": True}

        response = await guard.handle_request(guarded_request(key), handler, "read", ceiling=2)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"

    async def test_zero_ceiling_blocks_every_request(self, session_factory, make_api_key) -> None:
        """A ceiling of zero is honoured, not replaced by the key's limit."""
        key, _ = await make_api_key(rate_limit=60)
        guard = ApiGuard(session_factory)
        calls = []

        async def handler(request, auth):
            calls.append(auth.key_id)
            return {"ok": True}

        response = await guard.handle_request(guarded_request(key), handler, "read", ceiling=0)

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "0"
        assert calls == []

    async def test_unexpected_handler_error_is_logged_and_raised(
        self, session_factory, make_api_key
    ) -> None:
        """Non-HTTP errors record a 500 usage row, then propagate."""
        key, api_key = await make_api_key()
        guard = ApiGuard(session_factory)

        async def broken(request, auth):
            raise RuntimeError("handler bug")

        with pytest.raises(RuntimeError, match="handler bug"):
            await guard.handle_request(guarded_request(key), broken, "read")
        await drain()

        async with session_factory() as db:
            result = await db.execute(
                select(ApiUsageLog).where(ApiUsageLog.api_key_id == api_key.id)
            )
            logs = result.scalars().all()

        assert [(log.method, log.endpoint, log.status_code) for log in logs] == [
            ("GET", "/v1/reports", 500)
        ]

    async def test_handler_http_error_keeps_headers(self, client, make_api_key) -> None:
        """Errors raised by the handler are rendered and still decorated."""
        key, _ = await make_api_key()

        response = await client.put(
            "/v1/transactions/does-not-exist",
            headers=bearer(key),
            json={"amount": 5},
        )

        assert response.status_code == 404
        assert response.json() == {"detail": "Transaction not found"}
        assert "X-RateLimit-Remaining" in response.headers

    async def test_usage_is_logged(self, client, session_factory, make_api_key) -> None:
        """Each guarded request writes one usage row after the response."""
        key, api_key = await make_api_key()

        await client.get("/v1/transactions", headers=bearer(key))
        await client.put("/v1/transactions/missing", headers=bearer(key), json={})
        await drain()

        async with session_factory() as db:
            result = await db.execute(
                select(ApiUsageLog).where(ApiUsageLog.api_key_id == api_key.id)
            )
            logs = result.scalars().all()

        assert sorted((log.method, log.status_code) for log in logs) == [("GET", 200), ("PUT", 404)]
        assert all(log.duration_ms >= 0 for log in logs)

    async def test_usage_log_uses_route_template(self, client, session_factory, make_api_key) -> None:
        """Usage rows name endpoints the same way the rate-limit counters do."""
        key, api_key = await make_api_key()

        await client.put("/v1/transactions/abc-123", headers=bearer(key), json={})
        await drain()

        async with session_factory() as db:
            usage = await db.execute(select(ApiUsageLog.endpoint))
            windows = await db.execute(select(RateLimitWindow.endpoint))

        assert usage.scalars().all() == ["/v1/transactions/{transaction_id}"]
        assert windows.scalars().all() == ["/v1/transactions/{transaction_id}"]

    async def test_rejected_requests_are_not_logged(self, client, session_factory, make_api_key) -> None:
        key, _ = await make_api_key(scopes=["read"])

        await client.delete("/v1/transactions/anything", headers=bearer(key))
        await drain()

        async with session_factory() as db:
            result = await db.execute(select(ApiUsageLog))
            assert result.scalars().all() == []

    async def test_background_failure_does_not_change_response(
        self, client, make_api_key, monkeypatch
    ) -> None:
        """A failing last-used update is reported, not propagated."""
        key, _ = await make_api_key()

        async def explode(self, api_key_id):
            raise RuntimeError("write failed")

        monkeypatch.setattr(ApiGuard, "_touch_last_used", explode)

        response = await client.get("/v1/transactions", headers=bearer(key))
        await drain()

        assert response.status_code == 200
