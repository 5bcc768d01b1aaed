"""Content digests shared by the revision store and the save coordinator."""

from __future__ import annotations

import hashlib


def content_hash(content: str) -> str:
    """Return the SHA-256 hex digest of the UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
