"""Base definitions for remote object stores."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

PRESIGN_MIN_MINUTES = 5
PRESIGN_MAX_MINUTES = 1440


class ObjectStoreError(Exception):
    """Raised when the remote state of an object could not be determined."""


class ObjectStore(Protocol):
    """Interface for the remote store that holds synced artifacts.

    Keys are relative artifact paths; implementations apply their own root prefix. Only
    `check` raises: every transfer reports failure through its boolean result so the caller can
    keep the local copy and retry on a later pass.
    """

    def exists(self, path: str) -> bool:
        """Best-effort existence check; errors read as absent."""

    def check(self, path: str) -> bool:
        """Strict existence check; raises ObjectStoreError when the answer is unknown."""

    def upload(self, local_path: Path, remote_path: str) -> bool:
        """Stream a local file to `remote_path`."""

    def download(self, remote_path: str, local_path: Path) -> bool:
        """Stream `remote_path` into `local_path`, creating parent directories."""

    def delete(self, remote_path: str) -> bool:
        """Remove `remote_path`; an absent object counts as deleted."""

    def public_url(self, path: str) -> str:
        """Derive the public URL for a relative path without I/O."""

    def presigned_upload_url(
        self, path: str, content_type: str, ttl_minutes: int = 60
    ) -> str:
        """Issue a direct-PUT URL scoped to one key and content type."""


def clamp_presign_minutes(minutes: int) -> int:
    """Clamp a pre-signed URL lifetime to the supported window."""

    return max(PRESIGN_MIN_MINUTES, min(int(minutes), PRESIGN_MAX_MINUTES))


def join_public_url(base: str, root: str, path: str) -> str:
    """Build `{base}/{root}/{path}` with single slashes between the parts."""

    url = base.rstrip("/")
    root = root.strip("/")
    if root:
        url += "/" + root
    return url + "/" + path.lstrip("/")
