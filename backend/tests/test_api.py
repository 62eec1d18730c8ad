"""Tests for the HTTP API (dockwatch/api)."""

import httpx
import pytest

from dockwatch.db import get_db
from dockwatch.main import app
from dockwatch.models import ContainerSnapshot, UpgradeHistory
from dockwatch.services.state_service import get_state_service

CONTAINER_ID = "c" * 64


@pytest.fixture
async def client(session_factory, state):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_state_service] = lambda: state
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


def snapshot(instance, name, has_update, stack=None):
    return ContainerSnapshot(
        user_id=instance.user_id,
        portainer_instance_id=instance.id,
        portainer_url=instance.url,
        endpoint_id="1",
        container_id=name * 8,
        container_name=name,
        image_name=f"{name}:latest",
        image_repo=f"library/{name}",
        current_tag="latest",
        has_update=has_update,
        stack_name=stack,
        state="running",
    )


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "dockwatch"}

    async def test_api_health(self, client):
        response = await client.get("/api/v1/health")

        assert response.status_code == 200


class TestContainersEndpoint:
    """Test suite for GET /api/v1/containers."""

    async def test_cached_read_groups_by_stack(self, db, client, portainer_instance):
        """Test that a non-refresh read returns the stored snapshot without contacting Portainer."""
        db.add_all([
            snapshot(portainer_instance, "nginx", True, stack="web"),
            snapshot(portainer_instance, "redis", False, stack="web"),
            snapshot(portainer_instance, "plex", False),
        ])
        await db.commit()

        response = await client.get("/api/v1/containers")

        assert response.status_code == 200
        body = response.json()
        assert [stack["name"] for stack in body["stacks"]] == ["web", "Standalone"]
        assert len(body["containers"]) == 3
        assert body["portainer_instances"][0]["with_updates"] == 1
        assert body["portainer_instances"][0]["up_to_date"] == 2
        assert body["partial"] is False

    async def test_filter_by_user(self, db, client, portainer_instance):
        db.add(snapshot(portainer_instance, "nginx", True))
        await db.commit()

        response = await client.get("/api/v1/containers", params={"user_id": 2})

        assert response.status_code == 200
        assert response.json()["containers"] == []


class TestUpgradeEndpoint:
    """Test suite for POST /api/v1/containers/{id}/upgrade."""

    async def test_unknown_instance(self, client):
        response = await client.post(
            f"/api/v1/containers/{CONTAINER_ID}/upgrade",
            json={"portainer_url": "https://missing.example.com", "endpoint_id": "1", "image": "nginx:1.27"},
        )

        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    async def test_upgrade_in_progress(self, client, state, portainer_instance):
        """Test that a second upgrade of a locked container is rejected with 409."""
        await state.upgrade_locks.acquire(portainer_instance.id, CONTAINER_ID[:12], owner="user")

        response = await client.post(
            f"/api/v1/containers/{CONTAINER_ID}/upgrade",
            json={"portainer_url": portainer_instance.url, "endpoint_id": "1", "image": "nginx:1.27"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["detail"].startswith("Upgrade already in progress")
        assert body["container_id"] == CONTAINER_ID[:12]

    async def test_invalid_container_id(self, client, portainer_instance):
        response = await client.post(
            "/api/v1/containers/bad%20name/upgrade",
            json={"portainer_url": portainer_instance.url, "endpoint_id": "1", "image": "nginx:1.27"},
        )

        assert response.status_code == 400

    async def test_missing_image(self, client, portainer_instance):
        response = await client.post(
            f"/api/v1/containers/{CONTAINER_ID}/upgrade",
            json={"portainer_url": portainer_instance.url, "endpoint_id": "1"},
        )

        assert response.status_code == 422


class TestHistoryEndpoint:
    """Test suite for GET /api/v1/history/upgrades."""

    async def test_lists_newest_first_with_filters(self, db, client, portainer_instance):
        for name, status in (("web", "success"), ("db", "failed"), ("cache", "success")):
            db.add(UpgradeHistory(
                user_id=1,
                portainer_instance_id=portainer_instance.id,
                portainer_url=portainer_instance.url,
                endpoint_id="1",
                container_id=name * 8,
                container_name=name,
                old_image=f"{name}:1",
                new_image=f"{name}:1",
                status=status,
                failed_step="PULL" if status == "failed" else None,
            ))
        await db.commit()

        response = await client.get("/api/v1/history/upgrades")
        failed = await client.get("/api/v1/history/upgrades", params={"status": "failed"})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert [item["container_name"] for item in body["items"]] == ["cache", "db", "web"]
        assert failed.json()["total"] == 1
        assert failed.json()["items"][0]["failed_step"] == "PULL"

    async def test_batch_runs_empty(self, client):
        response = await client.get("/api/v1/history/batch-runs")

        assert response.status_code == 200
        assert response.json() == []


class TestDiscordEndpoint:
    """Test suite for POST /api/v1/discord/test."""

    async def test_invalid_webhook_url(self, client):
        response = await client.post(
            "/api/v1/discord/test", json={"webhook_url": "https://evil.example.com/api/webhooks/1/x"}
        )

        assert response.status_code == 400
        assert "Invalid Discord webhook URL" in response.json()["detail"]

    async def test_empty_body_rejected(self, client):
        response = await client.post("/api/v1/discord/test", json={"webhook_url": ""})

        assert response.status_code == 422
