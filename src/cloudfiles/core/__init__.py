"""Core pipeline components for Cloudfiles."""

from .engine import DeleteResult, SyncEngine, SyncResult
from .events import HostEvents
from .queue import PassResult, ThumbnailQueue
from .uploads import DirectUploads, PreparedUpload
from .urls import UrlRewriter

__all__ = [
    "DeleteResult",
    "DirectUploads",
    "HostEvents",
    "PassResult",
    "PreparedUpload",
    "SyncEngine",
    "SyncResult",
    "ThumbnailQueue",
    "UrlRewriter",
]
