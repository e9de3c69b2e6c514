"""Synchronisation of item artifacts between the local upload tree and the object store."""

from __future__ import annotations

import logging
import posixpath
import shutil
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from cloudfiles.config import Config
from cloudfiles.media import formats
from cloudfiles.media.artifacts import (
    ArtifactSetResolver,
    CompletenessPolicy,
    MetadataError,
    iter_sizes,
    primary_path,
    sibling_path,
)
from cloudfiles.media.images import (
    DerivedFile,
    DerivedImages,
    DerivedSize,
    DocumentPreviewer,
    ImageSizeGenerator,
    supported_modern_formats,
)
from cloudfiles.media.renderer import Renderer
from cloudfiles.storage import Database
from cloudfiles.stores import ObjectStore

PENDING_FLAG = "thumbnail_generation_pending"
SYNC_ERROR_FLAG = "sync_error"

SYNCED = "synced"
DEFERRED = "deferred"
SKIPPED = "skipped"
FAILED = "failed"
GENERATED = "generated"
COMPLETE = "complete"


@dataclass(slots=True)
class SyncResult:
    """Outcome of one item-level operation."""

    item_id: int
    status: str
    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    generated: list[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in {SYNCED, GENERATED, COMPLETE}


@dataclass(slots=True)
class DeleteResult:
    item_id: int
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncEngine:
    """Upload complete artifact sets, regenerate missing ones and sweep deleted items."""

    database: Database
    store: ObjectStore
    resolver: ArtifactSetResolver
    images: ImageSizeGenerator
    previews: DocumentPreviewer
    base_dir: Path
    temp_dir: Optional[Path] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    _processing: set[int] = field(default_factory=set, init=False, repr=False)

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        database: Database,
        store: ObjectStore,
        logger: Optional[logging.Logger] = None,
        supported_formats: Optional[frozenset[str]] = None,
    ) -> "SyncEngine":
        """Wire the engine and its media collaborators from configuration."""

        logger = logger or logging.getLogger(__name__)
        media = config.media
        supported = supported_modern_formats() if supported_formats is None else supported_formats
        temp_dir = config.uploads.temp_path
        renderer = Renderer.from_settings(media, temp_dir=temp_dir, logger=logger)
        images = ImageSizeGenerator.from_settings(media, supported_formats=supported, logger=logger)
        return cls(
            database=database,
            store=store,
            resolver=ArtifactSetResolver(CompletenessPolicy.from_settings(media, supported), logger),
            images=images,
            previews=DocumentPreviewer(
                renderer,
                media.document_sizes(),
                logger,
                modern_formats=images.modern_formats,
                quality=media.image_quality,
            ),
            base_dir=config.base_dir(),
            temp_dir=temp_dir,
            logger=logger,
        )

    # Upload and evict ------------------------------------------------------------------------

    def upload_and_evict(
        self, item_id: int, metadata: Optional[dict[str, Any]], mime_type: Optional[str] = None
    ) -> SyncResult:
        """Push a finalized artifact set to the store and drop the local copies.

        Incomplete sets are left alone; the host signals again once more artifacts exist.
        """

        if item_id in self._processing:
            self.logger.debug("Item %s is already being processed; ignoring nested call.", item_id)
            return SyncResult(item_id, SKIPPED, reason="already processing")

        self._processing.add(item_id)
        try:
            metadata = metadata or {}
            if mime_type is None:
                item = self.database.get_item(item_id)
                mime_type = item.mime_type if item else None
            if not self.resolver.is_complete(metadata, mime_type, item_id):
                self.logger.debug("Item %s is not complete yet; deferring upload.", item_id)
                return SyncResult(item_id, DEFERRED, reason="incomplete")
            try:
                primary = self._primary_for(item_id, metadata)
            except MetadataError as exc:
                self.logger.warning("Item %s skipped: %s", item_id, exc)
                return SyncResult(item_id, SKIPPED, reason=str(exc))
            return self._sync_artifacts(item_id, metadata, primary, evict=True)
        finally:
            self._processing.discard(item_id)

    def migrate_item(self, item_id: int, *, keep_local: bool = False, force: bool = False) -> SyncResult:
        """Upload an existing item regardless of how it was created.

        Items whose primary file is already in the store are skipped unless `force` is set.
        Raises ObjectStoreError when the store cannot say whether the primary exists.
        """

        item = self.database.get_item(item_id)
        if item is None:
            return SyncResult(item_id, SKIPPED, reason="no such item")
        metadata = item.metadata or {}
        try:
            primary = primary_path(metadata, item.attached_file, self.base_dir)
        except MetadataError as exc:
            self.logger.warning("Item %s skipped: %s", item_id, exc)
            return SyncResult(item_id, SKIPPED, reason=str(exc))

        if not force and self.store.check(primary):
            self.logger.debug("Item %s is already in the store.", item_id)
            return SyncResult(item_id, SKIPPED, reason="already remote")
        if not (self.base_dir / primary).is_file():
            self.logger.warning("Item %s skipped; %s is not present locally.", item_id, primary)
            return SyncResult(item_id, SKIPPED, reason="file not found")

        return self._sync_artifacts(item_id, metadata, primary, evict=not keep_local)

    def _sync_artifacts(
        self, item_id: int, metadata: dict[str, Any], primary: str, *, evict: bool
    ) -> SyncResult:
        result = SyncResult(item_id, SYNCED)
        for entry in self.resolver.artifact_set(metadata, primary):
            local = self.base_dir / entry.path
            if not local.is_file():
                self.logger.debug("Item %s: %s has no local file; skipping.", item_id, entry.path)
                continue
            if not self.store.upload(local, entry.path):
                result.failed.append(entry.path)
                continue
            result.uploaded.append(entry.path)
            if evict:
                local.unlink(missing_ok=True)

        if result.failed:
            result.status = FAILED
            self.database.set_flag(item_id, SYNC_ERROR_FLAG, "upload failed")
            self.logger.warning(
                "Item %s: %d artifact(s) failed to upload; local copies kept.",
                item_id,
                len(result.failed),
            )
        elif result.uploaded:
            self.database.delete_flag(item_id, SYNC_ERROR_FLAG)
            self.logger.info("Item %s synced %d artifact(s).", item_id, len(result.uploaded))
        else:
            self.logger.debug("Item %s has no local artifacts to sync.", item_id)
        return result

    # Fetch, generate, upload -----------------------------------------------------------------

    def fetch_generate_upload(self, item_id: int, *, force: bool = False) -> SyncResult:
        """Download the primary, generate missing artifacts and push them to the store.

        Metadata is written once at the end and only when something new was recorded. The
        pending marker is cleared on every path.
        """

        try:
            return self._fetch_generate_upload(item_id, force=force)
        finally:
            self.database.delete_flag(item_id, PENDING_FLAG)

    def _fetch_generate_upload(self, item_id: int, *, force: bool) -> SyncResult:
        item = self.database.get_item(item_id)
        if item is None:
            self.logger.warning("Item %s does not exist; nothing to generate.", item_id)
            return SyncResult(item_id, SKIPPED, reason="no such item")

        metadata: dict[str, Any] = dict(item.metadata or {})
        try:
            primary = primary_path(metadata, item.attached_file, self.base_dir)
        except MetadataError as exc:
            self.logger.warning("Item %s skipped: %s", item_id, exc)
            return SyncResult(item_id, SKIPPED, reason=str(exc))
        metadata.setdefault("file", primary)

        category = formats.classify(item.mime_type)
        if category == formats.OTHER:
            return SyncResult(item_id, COMPLETE, reason="no derived artifacts")
        if not force and not self._needs_generation(item_id, metadata, item.mime_type):
            self.logger.debug("Item %s already has every derived artifact.", item_id)
            return SyncResult(item_id, COMPLETE)

        scratch_root = self._temp_root()
        with tempfile.TemporaryDirectory(prefix="cloudfiles-job-", dir=scratch_root) as scratch:
            local = Path(scratch) / posixpath.basename(primary)
            copied = self._copy_local_primary(primary, local)
            if not copied and not self.store.download(primary, local):
                self.database.set_flag(item_id, SYNC_ERROR_FLAG, "download failed")
                self.logger.warning("Item %s: unable to fetch %s; leaving for inspection.", item_id, primary)
                return SyncResult(item_id, FAILED, reason="download failed")

            uploads = _DerivedUploads(SyncResult(item_id, GENERATED), primary, local)
            if category == formats.IMAGE:
                derived = self.images.generate(local, metadata, force=force)
                self._push(uploads, derived.files())
            else:
                derived = DerivedImages()
                for size in self.previews.iter_missing(local, item.mime_type, metadata, force=force):
                    derived.sizes.append(size)
                    self._push(uploads, size.files())
                derived.sources = self.previews.item_sources(derived.sizes)
                self._push(uploads, derived.sources)
            if copied and not self.store.exists(primary):
                if self.store.upload(local, primary):
                    uploads.result.uploaded.append(primary)
                else:
                    uploads.result.failed.append(primary)
            result = self._record_derived(uploads, derived, metadata)

        if result.generated:
            self.database.update_metadata(item_id, metadata)
            if metadata.get("file") != primary:
                self.database.update_attached_file(item_id, str(self.base_dir / metadata["file"]))
            self.logger.info(
                "Item %s: generated %s.", item_id, ", ".join(sorted(set(result.generated)))
            )
        if result.failed:
            self.database.set_flag(item_id, SYNC_ERROR_FLAG, "upload failed")
        else:
            self.database.delete_flag(item_id, SYNC_ERROR_FLAG)
        return result

    def _needs_generation(self, item_id: int, metadata: dict[str, Any], mime_type: str) -> bool:
        if formats.is_document(mime_type):
            return self.previews.needs_rendering(metadata)
        return not self.resolver.is_complete(metadata, mime_type, item_id)

    def _copy_local_primary(self, primary: str, destination: Path) -> bool:
        local = self.base_dir / primary
        if not local.is_file():
            return False
        shutil.copyfile(local, destination)
        return True

    def _push(self, uploads: "_DerivedUploads", files: Iterable[DerivedFile]) -> None:
        """Upload each file to its sibling path and discard the local copy."""

        for derived_file in files:
            path = derived_file.path
            if path in uploads.confirmed or path in uploads.rejected:
                continue
            if derived_file.existing or path == uploads.local_primary:
                uploads.confirmed.add(path)
                continue
            remote = sibling_path(uploads.primary, derived_file.entry["file"])
            if self.store.upload(path, remote):
                uploads.confirmed.add(path)
                uploads.result.uploaded.append(remote)
            else:
                uploads.rejected.add(path)
                uploads.result.failed.append(remote)
            path.unlink(missing_ok=True)

    def _record_derived(
        self, uploads: "_DerivedUploads", derived: DerivedImages, metadata: dict[str, Any]
    ) -> SyncResult:
        result = uploads.result

        def accepted(candidate: DerivedFile) -> bool:
            return candidate.path in uploads.confirmed

        if derived.merge_into(metadata, accepted):
            result.generated = [size.name for size in derived.sizes if _size_recorded(size, accepted)]
            if derived.scaled is not None and accepted(derived.scaled):
                result.generated.append("scaled")
            if any(accepted(source) for source in derived.sources):
                result.generated.append("sources")
        if result.failed:
            result.status = FAILED
            self.logger.warning(
                "Item %s: %d generated artifact(s) failed to upload.", result.item_id, len(result.failed)
            )
        elif not result.generated:
            result.status = COMPLETE
        return result

    # Deletion --------------------------------------------------------------------------------

    def delete_item_artifacts(
        self,
        item_id: int,
        metadata: Optional[dict[str, Any]] = None,
        attached_file: Optional[str] = None,
    ) -> DeleteResult:
        """Remove every artifact the last known metadata names from the store."""

        if metadata is None and attached_file is None:
            item = self.database.get_item(item_id)
            if item is not None:
                metadata, attached_file = item.metadata, item.attached_file
        metadata = metadata or {}
        result = DeleteResult(item_id)
        try:
            primary = primary_path(metadata, attached_file, self.base_dir)
        except MetadataError as exc:
            self.logger.warning("Item %s: nothing to delete: %s", item_id, exc)
            return result

        for entry in self.resolver.artifact_set(metadata, primary):
            if self.store.delete(entry.path):
                result.deleted.append(entry.path)
            else:
                result.failed.append(entry.path)
        self.logger.info(
            "Item %s: deleted %d remote artifact(s), %d failed.",
            item_id,
            len(result.deleted),
            len(result.failed),
        )
        return result

    # Helpers ---------------------------------------------------------------------------------

    def is_remote(self, item_id: int) -> bool:
        """Strict check whether the item's primary is in the store."""

        item = self.database.get_item(item_id)
        if item is None:
            return False
        try:
            primary = primary_path(item.metadata, item.attached_file, self.base_dir)
        except MetadataError:
            return False
        return self.store.check(primary)

    def _primary_for(self, item_id: int, metadata: dict[str, Any]) -> str:
        attached = None
        if not metadata.get("file"):
            item = self.database.get_item(item_id)
            attached = item.attached_file if item else None
        return primary_path(metadata, attached, self.base_dir)

    def _temp_root(self) -> Optional[str]:
        if self.temp_dir is None:
            return None
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return str(self.temp_dir)


@dataclass(slots=True)
class _DerivedUploads:
    result: SyncResult
    primary: str
    local_primary: Path
    confirmed: set[Path] = field(default_factory=set)
    rejected: set[Path] = field(default_factory=set)


def _size_recorded(size: DerivedSize, accepted: Callable[[DerivedFile], bool]) -> bool:
    if size.image is not None:
        return accepted(size.image)
    return any(accepted(source) for source in size.sources)


__all__ = [
    "COMPLETE",
    "DEFERRED",
    "DeleteResult",
    "FAILED",
    "GENERATED",
    "PENDING_FLAG",
    "SKIPPED",
    "SYNCED",
    "SYNC_ERROR_FLAG",
    "SyncEngine",
    "SyncResult",
]
