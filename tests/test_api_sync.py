"""Tests for the /sync endpoints and the /api/health endpoint.

The routers are mounted on a bare FastAPI app with get_db overridden to use
the in-memory session from conftest.
"""

import pytest
import httpx
from fastapi import FastAPI
from sqlalchemy import insert, select

from healthsync.api import health
from healthsync.api.sync import get_sync_service, router
from healthsync.core.database import get_db
from healthsync.models.server import SERVER_TABLES, CliSession
from healthsync.models.synced import SyncedTable

WEIGHT_CHANGE = {
    "table": "weight_logs",
    "id": "w1",
    "operation": "insert",
    "payload": {"id": "w1", "datetime": "2024-01-01T08:00:00Z", "weight": 180.0},
    "timestamp": 1709283600000,
}


def _make_test_app(session, remote_service):
    """Build a minimal FastAPI app with the sync router and a test DB."""
    app = FastAPI()
    app.include_router(router)
    app.include_router(health.router)

    async def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = lambda: remote_service
    return app


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def _seed_sessions(session):
    session.add(CliSession(id="s1", token="token-user-1", user_id="user-1", device_name="laptop"))
    session.add(CliSession(id="s2", token="token-user-2", user_id="user-2"))
    session.add(CliSession(id="s3", token="web-token", user_id="user-1", type="web"))
    await session.commit()


def _auth(token="token-user-1"):
    return {"Authorization": f"Bearer {token}"}


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, async_session, remote_service):
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.post("/sync/pull", json={"cursor": "1970-01-01T00:00:00Z"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing bearer token"

    @pytest.mark.asyncio
    async def test_unknown_token_is_rejected(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.post("/sync/push", json={"changes": []}, headers=_auth("nope"))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid CLI token"

    @pytest.mark.asyncio
    async def test_non_cli_session_is_rejected(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.post("/sync/pull", json={"cursor": "1970-01-01T00:00:00Z"}, headers=_auth("web-token"))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_token_marks_session_used(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.post("/sync/pull", json={"cursor": "1970-01-01T00:00:00Z"}, headers=_auth())
        assert resp.status_code == 200

        result = await async_session.execute(select(CliSession).where(CliSession.id == "s1"))
        assert result.scalar_one().last_used_at is not None


class TestPushPull:

    @pytest.mark.asyncio
    async def test_push_then_pull(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)

        async with _client(app) as client:
            push = await client.post("/sync/push", json={"changes": [WEIGHT_CHANGE]}, headers=_auth())
            pull = await client.post("/sync/pull", json={"cursor": "1970-01-01T00:00:00Z"}, headers=_auth())

        assert push.status_code == 200
        assert push.json() == {"accepted": ["w1"], "conflicts": []}

        assert pull.status_code == 200
        data = pull.json()
        assert data["hasMore"] is False
        assert data["cursor"] == "2024-03-01T09:00:00.000Z"
        assert len(data["changes"]) == 1
        change = data["changes"][0]
        assert change["table"] == "weight_logs"
        assert change["operation"] == "update"
        assert change["payload"]["weight"] == 180.0
        assert change["payload"]["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_conflict_uses_camel_case_server_version(self, async_session, remote_service):
        await _seed_sessions(async_session)
        await async_session.execute(insert(SERVER_TABLES[SyncedTable.WEIGHT_LOGS]).values(
            id="w1",
            user_id="user-1",
            datetime="2024-01-01T08:00:00Z",
            weight=160.0,
            created_at="2024-01-01T00:00:00.000Z",
            updated_at="2024-03-01T10:00:00.000Z",
        ))
        await async_session.commit()
        app = _make_test_app(async_session, remote_service)

        stale = dict(WEIGHT_CHANGE, operation="update")
        async with _client(app) as client:
            resp = await client.post("/sync/push", json={"changes": [stale]}, headers=_auth())

        data = resp.json()
        assert data["accepted"] == []
        assert data["conflicts"][0]["id"] == "w1"
        assert data["conflicts"][0]["table"] == "weight_logs"
        assert data["conflicts"][0]["serverVersion"]["weight"] == 160.0

    @pytest.mark.asyncio
    async def test_pull_honours_limit(self, async_session, remote_service):
        await _seed_sessions(async_session)
        table = SERVER_TABLES[SyncedTable.WEIGHT_LOGS]
        for day in range(1, 4):
            await async_session.execute(insert(table).values(
                id=f"w{day}",
                user_id="user-1",
                datetime="2024-01-01T08:00:00Z",
                weight=170.0,
                created_at=f"2024-01-0{day}T00:00:00.000Z",
                updated_at=f"2024-01-0{day}T00:00:00.000Z",
            ))
        await async_session.commit()
        app = _make_test_app(async_session, remote_service)

        async with _client(app) as client:
            resp = await client.post(
                "/sync/pull", json={"cursor": "1970-01-01T00:00:00Z", "limit": 2}, headers=_auth()
            )

        data = resp.json()
        assert [c["id"] for c in data["changes"]] == ["w1", "w2"]
        assert data["hasMore"] is True

    @pytest.mark.asyncio
    async def test_users_only_see_their_own_rows(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)

        async with _client(app) as client:
            await client.post("/sync/push", json={"changes": [WEIGHT_CHANGE]}, headers=_auth())
            resp = await client.post(
                "/sync/pull", json={"cursor": "1970-01-01T00:00:00Z"}, headers=_auth("token-user-2")
            )

        assert resp.json()["changes"] == []

    @pytest.mark.asyncio
    async def test_invalid_operation_is_unprocessable(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)
        bad = dict(WEIGHT_CHANGE, operation="upsert")

        async with _client(app) as client:
            resp = await client.post("/sync/push", json={"changes": [bad]}, headers=_auth())

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_malformed_cursor_is_unprocessable(self, async_session, remote_service):
        await _seed_sessions(async_session)
        app = _make_test_app(async_session, remote_service)

        async with _client(app) as client:
            resp = await client.post("/sync/pull", json={"cursor": "yesterday"}, headers=_auth())

        assert resp.status_code == 422


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, async_session, remote_service):
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.get("/api/health")
        assert resp.json() == {"status": "ok", "version": "0.1.0"}

    @pytest.mark.asyncio
    async def test_server_configuration_is_not_exposed(self, async_session, remote_service):
        app = _make_test_app(async_session, remote_service)
        async with _client(app) as client:
            resp = await client.get("/api/config")
        assert resp.status_code == 404
