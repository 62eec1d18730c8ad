"""Tests for ContainerUpgradeOrchestrator (dockwatch/services/upgrade_orchestrator.py)."""

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from dockwatch.exceptions import NotFoundError, UpgradeError, UpgradeInProgressError
from dockwatch.models import ContainerSnapshot, UpgradeHistory
from dockwatch.services.readiness import ReadinessPolicy
from dockwatch.services.upgrade_orchestrator import (
    ContainerUpgradeOrchestrator,
    UpgradeStep,
    upgrade_target_image,
)
from dockwatch.utils.digest import short_id

OLD_VPN = "sha256:" + "a" * 64
NEW_VPN = "sha256:" + "b" * 64
QBIT = "sha256:" + "c" * 64
VPN_IMAGE = "qmcgaw/gluetun:latest"
QBIT_IMAGE = "linuxserver/qbittorrent:latest"


def stage_release(engine, tag: str, old_digest: str, new_digest: str) -> None:
    """Make the next pull of ``tag`` resolve to a new image."""
    old_image = engine.tags[tag]
    engine.pull_targets[tag] = engine.add_image(tag, new_digest)
    engine.tags[tag] = old_image


@pytest.fixture
def vpn_stack(engine):
    """A VPN provider with qbittorrent sharing its network namespace."""
    engine.add_image(VPN_IMAGE, OLD_VPN)
    vpn_id = engine.add_container("vpn", VPN_IMAGE)
    engine.add_image(QBIT_IMAGE, QBIT)
    engine.add_container("qbittorrent", QBIT_IMAGE, network_mode=f"container:{vpn_id}")
    stage_release(engine, VPN_IMAGE, OLD_VPN, NEW_VPN)
    return vpn_id


@pytest.fixture
def orchestrator(db, state, engine, clock):
    return ContainerUpgradeOrchestrator(
        db,
        state,
        portainer_factory=lambda instance: engine,
        sleep=clock.sleep,
        clock=clock,
        cleanup_delay=0,
        readiness_policy=ReadinessPolicy(
            timeout_seconds=30, interval_seconds=1, stable_checks=2, min_running_seconds=0
        ),
    )


async def history_rows(db):
    result = await db.execute(select(UpgradeHistory).order_by(UpgradeHistory.id))
    return list(result.scalars().all())


class TestUpgradeTargetImage:
    """Test suite for upgrade_target_image."""

    def test_tag_is_kept(self):
        assert upgrade_target_image("nginx:1.27") == "nginx:1.27"

    def test_missing_tag_defaults_to_latest(self):
        assert upgrade_target_image("ghcr.io/home-assistant/home-assistant") == (
            "ghcr.io/home-assistant/home-assistant:latest"
        )

    def test_pinned_digest_is_dropped(self):
        """Test that a digest pin is replaced by the tag it was taken from."""
        assert upgrade_target_image(f"app:1.2@{OLD_VPN}") == "app:1.2"
        assert upgrade_target_image(f"nginx@{OLD_VPN}") == "nginx:latest"

    def test_registry_port_is_not_a_tag(self):
        assert upgrade_target_image("registry.local:5000/team/app") == "registry.local:5000/team/app:latest"


class TestUpgradeWithNetworkDependents:
    """Test suite for upgrading a network provider."""

    async def test_provider_upgrade_recreates_dependent(
        self, db, orchestrator, engine, vpn_stack, portainer_instance
    ):
        """Test that the dependent is recreated against the new provider ID."""
        result = await orchestrator.upgrade_single_container(
            portainer_instance.url, 1, vpn_stack, VPN_IMAGE, user_id=1
        )

        assert result.success is True
        assert result.container_name == "vpn"
        assert result.old_digest == OLD_VPN
        assert result.new_digest == NEW_VPN
        assert result.dependents_reconnected == ["qbittorrent"]
        assert result.dependents_failed == []

        new_vpn = engine.container_by_name("vpn")
        qbittorrent = engine.container_by_name("qbittorrent")
        assert new_vpn["Id"] == result.new_container_id != vpn_stack
        assert qbittorrent["HostConfig"]["NetworkMode"] == f"container:{new_vpn['Id']}"
        assert qbittorrent["State"]["Running"] is True
        assert engine.stopped[:2] == ["qbittorrent", "vpn"]
        assert engine.pulled == [VPN_IMAGE]

    async def test_dependent_create_drops_port_bindings(self, orchestrator, engine, vpn_stack, portainer_instance):
        """Test that the recreated dependent carries no ports of its own."""
        await orchestrator.upgrade_single_container(portainer_instance.url, 1, vpn_stack, VPN_IMAGE)

        created = next(c for c in engine.created if c["name"] == "qbittorrent")
        assert "PortBindings" not in created["config"]["HostConfig"]
        assert "NetworkingConfig" not in created["config"]

    async def test_stale_network_mode_is_retried_once(self, orchestrator, engine, vpn_stack, portainer_instance):
        """Test that a dependent created with a stale reference is recreated again."""
        engine.stale_network_modes = 1

        result = await orchestrator.upgrade_single_container(portainer_instance.url, 1, vpn_stack, VPN_IMAGE)

        assert result.dependents_reconnected == ["qbittorrent"]
        assert len([c for c in engine.created if c["name"] == "qbittorrent"]) == 2

    async def test_unrecoverable_dependent_is_reported(self, orchestrator, engine, vpn_stack, portainer_instance):
        """Test that a dependent still wrong after the retry does not fail the upgrade."""
        engine.stale_network_modes = 2

        result = await orchestrator.upgrade_single_container(portainer_instance.url, 1, vpn_stack, VPN_IMAGE)

        assert result.success is True
        assert result.dependents_failed == ["qbittorrent"]
        assert "1 dependent(s) not reconnected" in result.message

    async def test_success_is_recorded(self, db, orchestrator, vpn_stack, portainer_instance):
        """Test that the history row and the snapshot reflect the upgrade."""
        result = await orchestrator.upgrade_single_container(portainer_instance.url, 1, vpn_stack, VPN_IMAGE)

        [history] = await history_rows(db)
        assert history.id == result.history_id
        assert history.status == "success"
        assert history.container_name == "vpn"
        assert history.old_digest == OLD_VPN
        assert history.new_digest == NEW_VPN
        assert history.new_container_id == result.new_container_id
        assert history.failed_step is None

        snapshot = (await db.execute(
            select(ContainerSnapshot).where(ContainerSnapshot.container_name == "vpn")
        )).scalar_one()
        assert snapshot.container_id == result.new_container_id
        assert snapshot.current_digest == NEW_VPN
        assert snapshot.has_update is False
        assert snapshot.provides_network is True


class TestUpgradeFailures:
    """Test suite for failed upgrade steps."""

    async def test_pull_failure_keeps_old_container(self, db, orchestrator, engine, portainer_instance):
        """Test that a failed pull stops at PULL with the old container still present."""
        engine.add_image("nginx:1.27", OLD_VPN)
        container_id = engine.add_container("web", "nginx:1.27")
        engine.fail_pull = "manifest unknown"

        with pytest.raises(UpgradeError) as exc_info:
            await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "nginx:1.27")

        assert exc_info.value.step == UpgradeStep.PULL.value
        assert "manifest unknown" in str(exc_info.value)
        assert engine.container_by_name("web") is not None
        assert engine.removed == []

        [history] = await history_rows(db)
        assert history.status == "failed"
        assert history.failed_step == "PULL"
        assert "manifest unknown" in history.error_message
        assert history.completed_at is not None

    async def test_container_exiting_on_start_fails_readiness(self, db, orchestrator, engine, portainer_instance):
        """Test that a container that exits after START fails at AWAIT_READY with its logs."""
        engine.add_image("app:2", OLD_VPN)
        container_id = engine.add_container("app", "app:2")
        engine.exit_on_start.add("app")

        with pytest.raises(UpgradeError) as exc_info:
            await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "app:2")

        error = exc_info.value
        assert error.step == "AWAIT_READY"
        assert "exited with code 1" in str(error)
        assert error.logs == "fatal: configuration file missing"

        [history] = await history_rows(db)
        assert history.failed_step == "AWAIT_READY"
        assert history.new_container_id is not None

    async def test_unknown_container_fails_at_inspect(self, db, orchestrator, portainer_instance):
        """Test that a container missing at INSPECT is a failed upgrade, not a crash."""
        with pytest.raises(UpgradeError) as exc_info:
            await orchestrator.upgrade_single_container(
                portainer_instance.url, 1, "f" * 64, "nginx:1.27"
            )

        assert exc_info.value.step == "INSPECT"
        [history] = await history_rows(db)
        assert history.failed_step == "INSPECT"

    async def test_unknown_instance_is_not_found(self, orchestrator, portainer_instance):
        """Test that an unknown Portainer URL raises before anything is recorded."""
        with pytest.raises(NotFoundError):
            await orchestrator.upgrade_single_container("https://unknown.example.com", 1, "web", "nginx:1.27")

    async def test_client_closed_after_failure(self, orchestrator, engine, portainer_instance):
        engine.add_image("nginx:1.27", OLD_VPN)
        container_id = engine.add_container("web", "nginx:1.27")
        engine.fail_pull = "denied"

        with pytest.raises(UpgradeError):
            await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "nginx:1.27")

        assert engine.closed == 1

    async def test_unexpected_error_is_recorded(self, db, orchestrator, engine, portainer_instance, monkeypatch):
        """Test that a non-API exception still fails the history row at its step."""
        engine.add_image("nginx:1.27", OLD_VPN)
        container_id = engine.add_container("web", "nginx:1.27")

        async def broken_pull(endpoint_id, image_name):
            raise ValueError("Expecting value: line 1 column 1 (char 0)")

        monkeypatch.setattr(engine, "pull_image", broken_pull)

        with pytest.raises(UpgradeError) as exc_info:
            await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "nginx:1.27")

        assert exc_info.value.step == "PULL"
        assert isinstance(exc_info.value.__cause__, ValueError)
        [history] = await history_rows(db)
        assert history.status == "failed"
        assert history.failed_step == "PULL"
        assert "Expecting value" in history.error_message
        assert engine.closed == 1


class TestUpgradeLocking:
    """Test suite for concurrent upgrade requests."""

    async def test_second_upgrade_is_rejected(self, orchestrator, state, engine, vpn_stack, portainer_instance):
        """Test that an upgrade of a locked container fails fast."""
        async with state.upgrade_locks.hold(portainer_instance.id, short_id(vpn_stack), owner="batch"):
            with pytest.raises(UpgradeInProgressError, match="Upgrade already in progress"):
                await orchestrator.upgrade_single_container(portainer_instance.url, 1, vpn_stack, VPN_IMAGE)

        assert engine.stopped == []

    async def test_lock_released_after_failure(self, orchestrator, state, engine, portainer_instance):
        """Test that a failed upgrade does not leave the lock behind."""
        engine.add_image("nginx:1.27", OLD_VPN)
        container_id = engine.add_container("web", "nginx:1.27")
        engine.fail_pull = "denied"

        with pytest.raises(UpgradeError):
            await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "nginx:1.27")

        assert not state.upgrade_locks.is_locked(portainer_instance.id, short_id(container_id))


class TestReverseProxyUpgrade:
    """Test suite for upgrading the proxy in front of Portainer."""

    async def test_configured_ip_is_used(self, db, orchestrator, engine, portainer_instance):
        """Test that the client is redirected to the configured IP before the first call."""
        portainer_instance.ip_address = "192.168.1.10"
        await db.commit()
        engine.add_image("jc21/nginx-proxy-manager:latest", OLD_VPN)
        container_id = engine.add_container("npm", "jc21/nginx-proxy-manager:latest")

        await orchestrator.upgrade_single_container(
            portainer_instance.url, 1, container_id, "jc21/nginx-proxy-manager:latest"
        )

        assert engine.ip_urls == ["https://192.168.1.10:9443"]

    async def test_no_redirect_without_ip(self, orchestrator, engine, portainer_instance):
        """Test that without a configured IP and detection disabled the hostname is kept."""
        engine.add_image("jc21/nginx-proxy-manager:latest", OLD_VPN)
        container_id = engine.add_container("npm", "jc21/nginx-proxy-manager:latest")

        await orchestrator.upgrade_single_container(
            portainer_instance.url, 1, container_id, "jc21/nginx-proxy-manager:latest"
        )

        assert engine.ip_urls == []

    async def test_other_images_are_not_redirected(self, db, orchestrator, engine, portainer_instance):
        portainer_instance.ip_address = "192.168.1.10"
        await db.commit()
        engine.add_image("nginx:1.27", OLD_VPN)
        container_id = engine.add_container("web", "nginx:1.27")

        await orchestrator.upgrade_single_container(portainer_instance.url, 1, container_id, "nginx:1.27")

        assert engine.ip_urls == []


class TestBatchUpgrade:
    """Test suite for upgrade_containers."""

    async def test_failure_does_not_stop_the_batch(self, orchestrator, engine, portainer_instance):
        """Test that every container is attempted and failures are reported with their step."""
        engine.add_image("app:2", OLD_VPN)
        first = engine.add_container("app-1", "app:2")
        second = engine.add_container("app-2", "app:2")
        engine.exit_on_start.add("app-1")

        outcome = await orchestrator.upgrade_containers(portainer_instance.url, 1, [first, second], "app:2")

        assert [r["container_name"] for r in outcome["results"]] == ["app-2"]
        assert outcome["errors"][0]["container_id"] == first
        assert outcome["errors"][0]["step"] == "AWAIT_READY"


class TestStaleHistory:
    """Test suite for mark_stale_upgrades_failed."""

    async def test_in_progress_rows_are_failed(self, db, portainer_instance):
        """Test that rows left in progress are closed on startup."""
        db.add_all([
            UpgradeHistory(
                user_id=1, portainer_instance_id=portainer_instance.id, portainer_url=portainer_instance.url,
                endpoint_id="1", container_id="a" * 64, container_name="web",
                old_image="nginx:1.27", new_image="nginx:1.27", status="in_progress",
            ),
            UpgradeHistory(
                user_id=1, portainer_instance_id=portainer_instance.id, portainer_url=portainer_instance.url,
                endpoint_id="1", container_id="b" * 64, container_name="db",
                old_image="postgres:16", new_image="postgres:16", status="success",
                completed_at=datetime.now(UTC),
            ),
        ])
        await db.commit()

        count = await ContainerUpgradeOrchestrator.mark_stale_upgrades_failed(db)

        assert count == 1
        rows = {row.container_name: row for row in await history_rows(db)}
        await db.refresh(rows["web"])
        assert rows["web"].status == "failed"
        assert rows["web"].error_message == "Interrupted by application restart"
        assert rows["db"].status == "success"
