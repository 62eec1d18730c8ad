"""Decide which refreshed containers announce an update."""

from typing import Any, Mapping, Optional

from dockwatch.utils.digest import normalize_digest


def _latest_version(state: Mapping[str, Any]) -> Optional[str]:
    return state.get("latest_version") or state.get("latest_tag")


def _latest_digest(state: Mapping[str, Any]) -> Optional[str]:
    return normalize_digest(state.get("latest_digest_full") or state.get("latest_digest"))


def update_details_changed(previous: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
    """True when the newest available digest or version moved.

    A value missing on either side is inconsistent data, not a new release.
    """
    previous_digest, current_digest = _latest_digest(previous), _latest_digest(current)
    if previous_digest and current_digest and previous_digest != current_digest:
        return True

    previous_version, current_version = _latest_version(previous), _latest_version(current)
    return bool(previous_version and current_version and previous_version != current_version)


def should_notify_container_update(
    current: Mapping[str, Any], previous: Optional[Mapping[str, Any]]
) -> bool:
    """Whether a refreshed container should trigger an update notification.

    Notifies when the container is new and has an update, when it just
    gained one, or when a newer release replaced the one already pending.
    Only the latest pending release is announced; releases superseded between
    two refreshes are never seen.

    Args:
        current: Fresh state (has_update, latest_digest[_full], latest_version/tag)
        previous: Last persisted state of the same logical container, or None
    """
    current_has_update = bool(current.get("has_update"))
    if not current_has_update:
        return False
    if previous is None:
        return True
    if not previous.get("has_update"):
        return True
    return update_details_changed(previous, current)
