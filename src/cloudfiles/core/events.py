"""Mapping of host lifecycle events onto the sync engine."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from cloudfiles.core.engine import DeleteResult, SyncEngine, SyncResult
from cloudfiles.media import formats
from cloudfiles.media.artifacts import MetadataError, primary_path
from cloudfiles.media.renderer import image_dimensions
from cloudfiles.storage import Database, ItemRecord


@dataclass(slots=True)
class HostEvents:
    """Entry points the host calls when items are created, finalized or deleted."""

    database: Database
    engine: SyncEngine
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    last_result: Optional[SyncResult] = field(default=None, init=False, repr=False)

    def register_file(
        self, path: Path, *, mime_type: Optional[str] = None, title: Optional[str] = None
    ) -> ItemRecord:
        """Import a file already under the upload base directory as a new item."""

        base_dir = self.engine.base_dir
        path = Path(path).resolve()
        try:
            relative = path.relative_to(base_dir.resolve()).as_posix()
        except ValueError as exc:
            raise ValueError(f"{path} is not inside the upload directory {base_dir}") from exc
        if not path.is_file():
            raise FileNotFoundError(path)

        mime = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        item = self.database.add_item(
            mime_type=mime, attached_file=str(base_dir / relative), title=title or path.stem
        )
        self.logger.info("Registered %s as item %s (%s).", relative, item.id, mime)
        metadata = self.generate_metadata(item.id)
        self.metadata_finalized(item.id, metadata)
        return self.database.get_item(item.id) or item

    def generate_metadata(self, item_id: int) -> dict[str, Any]:
        """Build metadata for a local item, producing its derived sizes or previews."""

        item = self.database.get_item(item_id)
        if item is None:
            raise KeyError(f"Unknown item {item_id}")

        base_dir = self.engine.base_dir
        metadata: dict[str, Any] = dict(item.metadata or {})
        try:
            relative = primary_path(metadata, item.attached_file, base_dir)
        except MetadataError as exc:
            self.logger.warning("Item %s: cannot generate metadata: %s", item_id, exc)
            return metadata
        local = base_dir / relative
        metadata["file"] = relative
        if local.is_file():
            metadata.setdefault("filesize", local.stat().st_size)

        category = formats.classify(item.mime_type)
        if category == formats.IMAGE and local.is_file():
            dimensions = image_dimensions(local)
            if dimensions is not None:
                metadata["width"], metadata["height"] = dimensions
            derived = self.engine.images.generate(local, metadata)
            derived.merge_into(metadata)
        elif category == formats.DOCUMENT and local.is_file():
            self.engine.previews.generate(local, item.mime_type, metadata)

        self.database.update_metadata(item_id, metadata)
        if metadata.get("file") != relative:
            self.database.update_attached_file(item_id, str(base_dir / metadata["file"]))
        return metadata

    def metadata_finalized(self, item_id: int, metadata: dict[str, Any]) -> dict[str, Any]:
        """Upload and evict once the host has written the item's final metadata.

        The metadata is handed back unchanged.
        """

        self.last_result = self.engine.upload_and_evict(item_id, metadata)
        return metadata

    def item_deleted(self, item_id: int) -> DeleteResult:
        """Remove the item's remote artifacts, its remaining local copies and its record."""

        item = self.database.get_item(item_id)
        if item is None:
            self.logger.warning("Item %s does not exist; nothing to delete.", item_id)
            return DeleteResult(item_id)

        result = self.engine.delete_item_artifacts(item_id, item.metadata, item.attached_file)
        try:
            relative = primary_path(item.metadata, item.attached_file, self.engine.base_dir)
        except MetadataError:
            relative = None
        if relative is not None:
            for entry in self.engine.resolver.artifact_set(item.metadata or {}, relative):
                (self.engine.base_dir / entry.path).unlink(missing_ok=True)
        self.database.delete_item(item_id)
        return result
