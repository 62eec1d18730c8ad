"""Tests for the readiness gate (dockwatch/services/readiness.py)."""

import pytest

from dockwatch.exceptions import RemoteAPIError, UpgradeError
from dockwatch.services.readiness import ReadinessPolicy, is_database_image, wait_for_container_ready

FAST = ReadinessPolicy(
    timeout_seconds=30,
    interval_seconds=1,
    stable_checks=2,
    min_running_seconds=3,
    database_stable_checks=3,
    database_min_running_seconds=10,
    health_grace_seconds=8,
    health_grace_checks=5,
)


class ScriptedClient:
    """Returns a scripted sequence of container states, repeating the last one."""

    def __init__(self, states, logs="listening on :8080"):
        self.states = list(states)
        self.logs = logs
        self.inspections = 0

    async def inspect_container(self, endpoint_id, container_id):
        self.inspections += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        if isinstance(state, Exception):
            raise state
        return {"Id": container_id, "State": state}

    async def get_container_logs(self, endpoint_id, container_id, tail=100):
        return self.logs


def running(health=None):
    state = {"Status": "running", "Running": True}
    if health:
        state["Health"] = {"Status": health}
    return state


class TestDatabaseImages:
    """Test suite for is_database_image."""

    def test_known_databases(self):
        assert is_database_image("postgres:16") is True
        assert is_database_image("bitnami/MariaDB:11") is True
        assert is_database_image("redis:7") is True

    def test_other_images(self):
        assert is_database_image("nginx:1.27") is False
        assert is_database_image(None) is False


class TestWaitForContainerReady:
    """Test suite for wait_for_container_ready."""

    async def test_stable_running_container_is_ready(self, clock):
        """Test that a container without health check is ready after min running time and stable polls."""
        client = ScriptedClient([running()])

        elapsed = await wait_for_container_ready(
            client, 1, "a" * 64, "nginx:1.27", FAST, clock.sleep, clock
        )

        assert elapsed == 3
        assert client.inspections == 3

    async def test_database_waits_longer(self, clock):
        """Test that database images use the database thresholds."""
        client = ScriptedClient([running()])

        elapsed = await wait_for_container_ready(
            client, 1, "a" * 64, "postgres:16", FAST, clock.sleep, clock
        )

        assert elapsed == 10

    async def test_healthy_container_is_ready_immediately(self, clock):
        client = ScriptedClient([running("starting"), running("healthy")])

        elapsed = await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert elapsed == 2

    async def test_unhealthy_container_fails_with_logs(self, clock):
        """Test that an unhealthy status fails the gate and carries the container logs."""
        client = ScriptedClient([running("starting"), running("unhealthy")], logs="db connection refused")

        with pytest.raises(UpgradeError, match="health check failed") as exc_info:
            await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert exc_info.value.logs == "db connection refused"

    async def test_health_starting_accepted_after_grace(self, clock):
        """Test that a health check stuck in starting is accepted once running stably past the grace period."""
        client = ScriptedClient([running("starting")])

        elapsed = await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert elapsed == 8

    async def test_exited_container_fails(self, clock):
        client = ScriptedClient([{"Status": "exited", "Running": False, "ExitCode": 137}], logs="Killed")

        with pytest.raises(UpgradeError, match="exited with code 137") as exc_info:
            await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert exc_info.value.logs == "Killed"

    async def test_restart_loop_resets_stability(self, clock):
        """Test that a container seen restarting must be stable again from scratch."""
        client = ScriptedClient([running(), {"Status": "restarting"}, running()])

        elapsed = await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert elapsed == 4

    async def test_transient_poll_errors_are_tolerated(self, clock):
        client = ScriptedClient([RemoteAPIError("timeout"), running()])

        elapsed = await wait_for_container_ready(client, 1, "a" * 64, "app:1", FAST, clock.sleep, clock)

        assert elapsed == 3

    async def test_timeout_with_running_container_is_accepted(self, clock):
        """Test that a container still running at the timeout is considered ready."""
        policy = ReadinessPolicy(timeout_seconds=5, interval_seconds=1, stable_checks=2, min_running_seconds=60)
        client = ScriptedClient([running()])

        elapsed = await wait_for_container_ready(client, 1, "a" * 64, "app:1", policy, clock.sleep, clock)

        assert elapsed == 5

    async def test_timeout_while_created_fails(self, clock):
        policy = ReadinessPolicy(timeout_seconds=5, interval_seconds=1)
        client = ScriptedClient([{"Status": "created", "Running": False}])

        with pytest.raises(UpgradeError, match="did not become ready within 5s"):
            await wait_for_container_ready(client, 1, "a" * 64, "app:1", policy, clock.sleep, clock)
