"""Direct-to-store uploads: presigned PUT issuance and item registration."""

from __future__ import annotations

import logging
import posixpath
import re
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from cloudfiles.core.engine import PENDING_FLAG, SYNC_ERROR_FLAG
from cloudfiles.core.events import HostEvents
from cloudfiles.core.queue import ThumbnailQueue
from cloudfiles.media import formats
from cloudfiles.media.renderer import image_dimensions
from cloudfiles.storage import Database, ItemRecord
from cloudfiles.stores import ObjectStore

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    """Reduce a client-supplied name to a safe single path segment."""

    name = posixpath.basename(filename.replace("\\", "/")).strip()
    name = re.sub(r"\s+", "-", name)
    name = _UNSAFE.sub("", name).strip(".-")
    return name


@dataclass(slots=True)
class PreparedUpload:
    upload_url: str
    public_url: str
    key: str
    filename: str
    content_type: str

    def as_dict(self) -> dict[str, str]:
        return {
            "upload_url": self.upload_url,
            "public_url": self.public_url,
            "key": self.key,
            "filename": self.filename,
            "content_type": self.content_type,
        }


@dataclass(slots=True)
class DirectUploads:
    """Issue upload URLs and turn completed direct uploads into queued items."""

    database: Database
    store: ObjectStore
    queue: ThumbnailQueue
    events: HostEvents
    base_dir: Path
    temp_dir: Optional[Path] = None
    presign_minutes: int = 60
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def prepare(self, filename: str, content_type: str) -> PreparedUpload:
        """Reserve a unique key under the dated upload directory and presign a PUT for it."""

        safe = sanitize_filename(filename)
        if not safe or not content_type:
            raise ValueError("A file name and a content type are required.")

        subdir = self.clock().strftime("%Y/%m")
        unique = self._unique_filename(subdir, safe)
        key = f"{subdir}/{unique}"
        upload_url = self.store.presigned_upload_url(key, content_type, self.presign_minutes)
        self.logger.debug("Issued upload URL for %s (%s).", key, content_type)
        return PreparedUpload(
            upload_url=upload_url,
            public_url=self.store.public_url(key),
            key=key,
            filename=unique,
            content_type=content_type,
        )

    def register(
        self, *, filename: str, key: str, content_type: str, file_size: int = 0
    ) -> ItemRecord:
        """Create an item for an object that was uploaded straight to the store."""

        if not filename or not key or not content_type:
            raise ValueError("filename, key and content_type are required.")

        title = Path(sanitize_filename(filename) or filename).stem
        item = self.database.add_item(
            mime_type=content_type, attached_file=str(self.base_dir / key), title=title
        )

        metadata: dict[str, Any] = {"file": key, "filesize": file_size}
        queue_it = False
        if formats.is_image(content_type):
            measured = self._measure_image(key)
            if measured is None:
                self.database.set_flag(item.id, SYNC_ERROR_FLAG, "download failed")
                self.logger.warning("Item %s: unable to read dimensions of %s.", item.id, key)
            else:
                metadata.update(measured)
                queue_it = True
        elif formats.is_document(content_type):
            queue_it = True

        if queue_it:
            self.queue.enqueue(item.id)
            self.database.set_flag(item.id, PENDING_FLAG)

        self.database.update_metadata(item.id, metadata)
        self.events.metadata_finalized(item.id, metadata)
        self.logger.info("Registered direct upload %s as item %s.", key, item.id)
        return self.database.get_item(item.id) or item

    def _measure_image(self, key: str) -> Optional[dict[str, int]]:
        root = None
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            root = str(self.temp_dir)
        with tempfile.TemporaryDirectory(prefix="cloudfiles-measure-", dir=root) as scratch:
            local = Path(scratch) / posixpath.basename(key)
            if not self.store.download(key, local):
                return None
            dimensions = image_dimensions(local)
            if dimensions is None:
                return None
            return {
                "width": dimensions[0],
                "height": dimensions[1],
                "filesize": local.stat().st_size,
            }

    def _unique_filename(self, subdir: str, filename: str) -> str:
        stem, suffix = posixpath.splitext(filename)
        candidate = filename
        counter = 1
        while (self.base_dir / subdir / candidate).exists() or self.store.exists(
            f"{subdir}/{candidate}"
        ):
            candidate = f"{stem}-{counter}{suffix}"
            counter += 1
        return candidate
