"""Helpers for content digests and Docker object IDs."""

from typing import Optional

DIGEST_PREFIX = "sha256:"
SHORT_ID_LENGTH = 12


def strip_digest_prefix(digest: Optional[str]) -> Optional[str]:
    """Remove an optional ``sha256:`` prefix. Case is preserved."""
    if not digest:
        return None
    digest = digest.strip()
    if digest.startswith(DIGEST_PREFIX):
        digest = digest[len(DIGEST_PREFIX):]
    return digest or None


def normalize_digest(digest: Optional[str]) -> Optional[str]:
    """Lowercased digest without prefix, used for dedup keys and comparisons across sources."""
    stripped = strip_digest_prefix(digest)
    return stripped.lower() if stripped else None


def ensure_digest_prefix(digest: Optional[str]) -> Optional[str]:
    """Return the digest in ``sha256:<hex>`` form."""
    stripped = strip_digest_prefix(digest)
    return f"{DIGEST_PREFIX}{stripped}" if stripped else None


def short_digest(digest: Optional[str]) -> Optional[str]:
    """First 12 hex characters of a digest, as shown in the UI."""
    stripped = strip_digest_prefix(digest)
    return stripped[:SHORT_ID_LENGTH] if stripped else None


def short_id(object_id: Optional[str]) -> str:
    """12-character form of a container or image ID."""
    return (strip_digest_prefix(object_id) or "")[:SHORT_ID_LENGTH]
