"""
HTTP surface tests: authentication, error rendering and the main routes.
"""

import pytest
from fastapi.testclient import TestClient

from calilights.main import app
from calilights.services.auth_service import auth_service
from calilights.services.chain_service import chain_service
from calilights.services.database_service import database_service

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


@pytest.fixture
def client(db):
    return TestClient(app)


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {auth_service.create_access_token(str(user.id))}"}


def _error(response) -> dict:
    body = response.json()
    assert set(body) == {"error"}
    return body["error"]


class TestErrorShape:
    """Every failure renders as {"error": {"kind", "message"}}."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = client.get("/api/v1/missions/3f9a1c52-0c4e-4a8e-9d7b-2f1e0a9b8c7d")
        assert response.status_code == 401
        assert _error(response)["kind"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_refresh_token_rejected(self, client, factory):
        user = await factory.user()
        token = auth_service.create_access_token(str(user.id), additional_claims={"type": "refresh"})
        response = client.get("/api/v1/chains/3f9a1c52-0c4e-4a8e-9d7b-2f1e0a9b8c7d/missions",
                              headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, client, factory):
        user = await factory.user(is_active=False)
        response = client.get("/api/v1/missions/3f9a1c52-0c4e-4a8e-9d7b-2f1e0a9b8c7d", headers=_auth(user))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_mission(self, client, factory):
        user = await factory.user()
        response = client.get("/api/v1/missions/3f9a1c52-0c4e-4a8e-9d7b-2f1e0a9b8c7d", headers=_auth(user))
        assert response.status_code == 404
        assert _error(response)["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_malformed_id(self, client, factory):
        user = await factory.user()
        response = client.get("/api/v1/missions/not-a-uuid", headers=_auth(user))
        assert response.status_code in (404, 422)
        assert _error(response)["kind"] in ("not_found", "validation")

    @pytest.mark.asyncio
    async def test_validation(self, client, factory):
        chain = await factory.chain()
        response = client.post(
            "/api/v1/missions",
            json={"chain_id": str(chain.id), "prompt": "  ", "window_minutes": 1},
            headers=_auth(chain.admin),
        )
        assert response.status_code == 422
        error = _error(response)
        assert error["kind"] == "validation"
        assert "prompt" in error["message"]

    @pytest.mark.asyncio
    async def test_forbidden_and_conflict(self, client, factory):
        chain = await factory.chain()
        body = {"chain_id": str(chain.id), "prompt": "Golden hour", "window_minutes": 30}

        denied = client.post("/api/v1/missions", json=body, headers=_auth(chain.members[0]))
        assert denied.status_code == 403
        assert _error(denied)["kind"] == "forbidden"

        created = client.post("/api/v1/missions", json=body, headers=_auth(chain.admin))
        assert created.status_code == 201

        duplicate = client.post("/api/v1/missions", json=body, headers=_auth(chain.admin))
        assert duplicate.status_code == 409
        assert _error(duplicate)["kind"] == "conflict"


class TestMissionRoutes:
    """A mission driven end to end over HTTP."""

    @pytest.mark.asyncio
    async def test_capture_and_lock(self, client, factory, generator):
        chain = await factory.chain()
        created = client.post(
            "/api/v1/missions",
            json={"chain_id": str(chain.id), "prompt": "Golden hour", "window_minutes": 30, "submissions_required": 5},
            headers=_auth(chain.admin),
        ).json()
        assert created["state"] == "LOBBY"
        mission_url = f"/api/v1/missions/{created['id']}"

        submitted = client.post(
            f"{mission_url}/entries",
            json={"media_url": "https://cdn.calilights.test/a.jpg", "captured_at": "2026-03-14T09:05:00-07:00"},
            headers=_auth(chain.members[0]),
        )
        assert submitted.status_code == 200
        assert submitted.json()["mission"]["state"] == "CAPTURE"
        assert submitted.json()["locked"] is False

        joined = client.post(f"{mission_url}/join", headers=_auth(chain.members[1])).json()
        presence = {p["user_id"]: p["has_submitted"] for p in joined["presence"]}
        assert presence[str(chain.members[0].id)] is True
        assert presence[str(chain.members[1].id)] is False

        member_lock = client.post(f"{mission_url}/lock", headers=_auth(chain.members[0]))
        assert member_lock.status_code == 403

        locked = client.post(f"{mission_url}/lock", headers=_auth(chain.admin))
        assert locked.status_code == 200
        body = locked.json()
        assert body["mission"]["state"] == "FUSING"
        assert body["job"]["status"] == "PENDING"
        assert body["fusion_error"] is None

        jobs = client.get(f"{mission_url}/jobs", headers=_auth(chain.members[1])).json()
        assert [j["operation_id"] for j in jobs] == [body["job"]["operation_id"]]

        job = client.get(f"/api/v1/jobs/{body['job']['operation_id']}", headers=_auth(chain.members[0]))
        assert job.status_code == 200

        again = client.post(f"{mission_url}/lock", headers=_auth(chain.admin))
        assert again.status_code == 409

        archived = client.post(f"{mission_url}/archive", headers=_auth(chain.admin))
        assert archived.json()["state"] == "ARCHIVED"

        listing = client.get(f"/api/v1/chains/{chain.id}/missions", headers=_auth(chain.members[0])).json()
        assert [m["id"] for m in listing] == [created["id"]]


class TestPropagateRoute:
    """Starting one prompt across connected chains."""

    @pytest.mark.asyncio
    async def test_propagate(self, client, factory, notifier):
        origin = await factory.chain(name="Origin")
        other = await factory.chain(name="Other")
        async with database_service.get_session() as session:
            await chain_service.ensure_connection(session, origin.id, other.id, reason="test")
        body = {"origin_chain_id": str(origin.id), "prompt": "Golden hour", "window_minutes": 30}

        denied = client.post("/api/v1/missions/propagate", json=body, headers=_auth(origin.members[0]))
        assert denied.status_code == 403

        short = client.post(
            "/api/v1/missions/propagate", json={**body, "prompt": "abc"}, headers=_auth(origin.admin)
        )
        assert short.status_code == 422

        response = client.post("/api/v1/missions/propagate", json=body, headers=_auth(origin.admin))
        assert response.status_code == 200
        result = response.json()
        assert result["chains_updated"] == 1
        assert result["skipped"] == []

        again = client.post("/api/v1/missions/propagate", json=body, headers=_auth(origin.admin)).json()
        assert again["chains_updated"] == 0
        assert again["skipped"][0]["chain_id"] == str(other.id)
        assert again["skipped"][0]["kind"] == "conflict"

        listing = client.get(f"/api/v1/chains/{other.id}/missions", headers=_auth(other.admin)).json()
        assert [m["id"] for m in listing] == result["mission_ids"]


class TestScheduleRoutes:
    """Per-chain schedule configuration."""

    @pytest.mark.asyncio
    async def test_schedule_crud(self, client, factory):
        chain = await factory.chain()
        url = f"/api/v1/chains/{chain.id}/schedule"

        assert client.get(url, headers=_auth(chain.members[0])).status_code == 404

        body = {"auto_start_at": "09:00", "timezone": "America/Los_Angeles", "prompt_template": "Morning light"}
        assert client.put(url, json=body, headers=_auth(chain.members[0])).status_code == 403

        saved = client.put(url, json=body, headers=_auth(chain.admin))
        assert saved.status_code == 200
        assert saved.json()["auto_start_at"] == "09:00"
        assert saved.json()["next_run_at"] is not None

        bad = client.put(url, json={**body, "auto_start_at": "9am"}, headers=_auth(chain.admin))
        assert bad.status_code == 422

        assert client.delete(url, headers=_auth(chain.admin)).status_code == 204
        assert client.get(url, headers=_auth(chain.admin)).status_code == 404


class TestCronRoutes:
    """Sweep triggers guarded by the shared secret."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/v1/cron/schedules/check", "/api/v1/cron/jobs/poll", "/api/v1/cron/missions/expire"])
    async def test_requires_secret(self, client, path):
        assert client.post(path).status_code == 401
        assert client.post(path, headers={"X-Cron-Secret": "wrong"}).status_code == 401

    @pytest.mark.asyncio
    async def test_expire_sweep(self, client, factory, generator):
        response = client.post("/api/v1/cron/missions/expire", headers=CRON_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["checked"] == 0
        assert body["errors"] == 0

    @pytest.mark.asyncio
    async def test_get_also_accepted(self, client, db):
        response = client.get("/api/v1/cron/jobs/poll", headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.json()["checked"] == 0


class TestSystemRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_root(self, client):
        assert client.get("/").json()["name"] == "CaliLights API"
