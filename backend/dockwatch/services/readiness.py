"""Readiness gate for a freshly started container."""

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dockwatch.exceptions import NotFoundError, RemoteAPIError, UpgradeError
from dockwatch.services.portainer_client import PortainerClient
from dockwatch.utils.digest import short_id

logger = logging.getLogger(__name__)

DATABASE_IMAGE_PATTERN = re.compile(
    r"postgres|mysql|mariadb|redis|mongo|couchdb|influxdb|elasticsearch", re.IGNORECASE
)
LOG_TAIL_LINES = 50


def is_database_image(image_name: Optional[str]) -> bool:
    return bool(image_name) and DATABASE_IMAGE_PATTERN.search(image_name) is not None


@dataclass
class ReadinessPolicy:
    """Timing of the readiness gate.

    Without a health check, a container is ready once it has been running for
    ``stable_checks`` consecutive polls and ``min_running_seconds``; databases
    use the longer ``database_*`` thresholds. A health check that stays in
    ``starting`` is accepted after ``health_grace_seconds`` of stable running.
    """

    timeout_seconds: float = 120.0
    interval_seconds: float = 2.0
    stable_checks: int = 2
    min_running_seconds: float = 5.0
    database_stable_checks: int = 3
    database_min_running_seconds: float = 15.0
    health_grace_seconds: float = 30.0
    health_grace_checks: int = 5


def _container_status(details: Dict[str, Any]) -> str:
    state = details.get("State") or {}
    if state.get("Status"):
        return state["Status"]
    return "running" if state.get("Running") else "unknown"


async def _recent_logs(client: PortainerClient, endpoint_id, container_id: str) -> Optional[str]:
    try:
        return await client.get_container_logs(endpoint_id, container_id, tail=LOG_TAIL_LINES)
    except RemoteAPIError as e:
        logger.warning(f"Could not fetch logs of {short_id(container_id)}: {e}")
        return None


async def wait_for_container_ready(
    client: PortainerClient,
    endpoint_id,
    container_id: str,
    image_name: Optional[str] = None,
    policy: Optional[ReadinessPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Poll a started container until it is ready.

    Args:
        client: Portainer client (possibly redirected to an IP)
        endpoint_id: Endpoint of the container
        container_id: Container to watch
        image_name: Used to recognize databases, which get longer thresholds
        policy: Timing thresholds
        sleep: Async sleep between polls
        clock: Monotonic clock

    Returns:
        Seconds until the container was considered ready

    Raises:
        UpgradeError: The container exited, became unhealthy, vanished or did
            not become ready in time; ``logs`` holds its recent output when available
    """
    policy = policy or ReadinessPolicy()
    database = is_database_image(image_name)
    required_checks = policy.database_stable_checks if database else policy.stable_checks
    min_running = policy.database_min_running_seconds if database else policy.min_running_seconds

    started = clock()
    consecutive_running = 0
    while clock() - started < policy.timeout_seconds:
        await sleep(policy.interval_seconds)
        elapsed = clock() - started

        try:
            details = await client.inspect_container(endpoint_id, container_id)
        except NotFoundError:
            raise UpgradeError(f"Container {short_id(container_id)} disappeared while starting")
        except RemoteAPIError as e:
            logger.debug(f"Readiness poll of {short_id(container_id)} failed: {e}")
            consecutive_running = 0
            continue

        status = _container_status(details)
        state = details.get("State") or {}
        if status in ("exited", "dead"):
            exit_code = state.get("ExitCode", 0)
            logs = await _recent_logs(client, endpoint_id, container_id)
            raise UpgradeError(f"Container exited with code {exit_code} while starting", logs=logs)

        if status != "running":
            consecutive_running = 0
            continue
        consecutive_running += 1

        health = (state.get("Health") or {}).get("Status")
        if health:
            if health == "healthy":
                logger.info(f"Container {short_id(container_id)} is healthy after {elapsed:.0f}s")
                return elapsed
            if health == "unhealthy":
                logs = await _recent_logs(client, endpoint_id, container_id)
                raise UpgradeError("Container health check failed", logs=logs)
            if elapsed >= policy.health_grace_seconds and consecutive_running >= policy.health_grace_checks:
                logger.info(
                    f"Health check of {short_id(container_id)} still {health} but running stably, "
                    "considering it ready"
                )
                return elapsed
            continue

        if elapsed >= min_running and consecutive_running >= required_checks:
            logger.info(f"Container {short_id(container_id)} running and stable after {elapsed:.0f}s")
            return elapsed

    try:
        details = await client.inspect_container(endpoint_id, container_id)
    except RemoteAPIError as e:
        raise UpgradeError(
            f"Container did not become ready within {policy.timeout_seconds:.0f}s: {e}"
        ) from e

    status = _container_status(details)
    if status == "running":
        logger.warning(
            f"Readiness timeout reached but {short_id(container_id)} is running, considering it ready"
        )
        return clock() - started

    logs = await _recent_logs(client, endpoint_id, container_id)
    raise UpgradeError(
        f"Container did not become ready within {policy.timeout_seconds:.0f}s (state: {status})",
        logs=logs,
    )
