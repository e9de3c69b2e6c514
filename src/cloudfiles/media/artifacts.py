"""Artifact set resolution and completeness checks for item metadata.

An item's metadata record names its primary file plus any derived artifacts: the pre-scaling
original, per-size variants, and modern-format alternatives for the primary and for every size.
All of them live in the primary file's directory. `ArtifactSetResolver` turns a record into
that full list of relative paths and decides whether the record is complete enough to sync.

The completeness verdict leans towards "not yet": uploading and evicting a partial set would
strand artifacts that the host is still about to write.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from cloudfiles.config import MediaSettings
from cloudfiles.media import formats

PRIMARY = "primary"
ORIGINAL = "original"
SIZE = "size"
SIZE_SOURCE = "size-source"
SOURCE = "source"

EDITED_MARKER = "-edited-"


class MetadataError(Exception):
    """Raised when no primary path can be derived for an item."""


@dataclass(frozen=True, slots=True)
class ArtifactEntry:
    """One expected artifact; the role is informational only."""

    path: str
    role: str


@dataclass(frozen=True, slots=True)
class CompletenessPolicy:
    """Inputs to the completeness verdict besides the metadata itself."""

    registered_sizes: Mapping[str, tuple[int, int]]
    thumbnail_box: tuple[int, int]
    modern_formats_required: bool = False

    @classmethod
    def from_settings(
        cls, media: MediaSettings, supported_formats: frozenset[str] | set[str] = frozenset()
    ) -> "CompletenessPolicy":
        return cls(
            registered_sizes={
                name: (box.width, box.height) for name, box in media.registered_sizes().items()
            },
            thumbnail_box=(media.thumbnail.width, media.thumbnail.height),
            modern_formats_required=modern_formats_required(media, supported_formats),
        )


def modern_formats_required(media: MediaSettings, supported_formats: frozenset[str] | set[str]) -> bool:
    """Conversion must be switched on and the backend must encode webp or avif."""

    if not media.output_format:
        return False
    return bool({"webp", "avif"} & set(supported_formats))


def iter_sources(value: Any) -> Iterator[dict[str, Any]]:
    """Yield modern-format descriptors that name a file.

    Descriptors are stored as a list, but records written by other tools may key them by MIME
    type instead; both shapes are accepted.
    """

    if isinstance(value, Mapping):
        candidates = value.values()
    elif isinstance(value, (list, tuple)):
        candidates = value
    else:
        return
    for candidate in candidates:
        if isinstance(candidate, Mapping) and candidate.get("file"):
            yield dict(candidate)


def iter_sizes(metadata: Mapping[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    sizes = metadata.get("sizes")
    if not isinstance(sizes, Mapping):
        return
    for name, entry in sizes.items():
        if isinstance(entry, Mapping):
            yield str(name), dict(entry)


def has_modern_formats(metadata: Mapping[str, Any]) -> bool:
    """True when the item and every one of its sizes list at least one alternative."""

    if not any(True for _ in iter_sources(metadata.get("sources"))):
        return False
    for _, size in iter_sizes(metadata):
        if not any(True for _ in iter_sources(size.get("sources"))):
            return False
    return True


def primary_path(
    metadata: Optional[Mapping[str, Any]],
    attached_file: Optional[str] = None,
    base_dir: Optional[Path] = None,
) -> str:
    """Return the primary file's relative path.

    Legacy records may lack `file`; the item's attached local path is then made relative to the
    artifact base directory. Raises MetadataError when neither yields a path.
    """

    if metadata and metadata.get("file"):
        return str(metadata["file"]).lstrip("/")
    if attached_file:
        attached = Path(attached_file)
        if not attached.is_absolute():
            return attached.as_posix().lstrip("/")
        if base_dir is not None:
            try:
                return attached.relative_to(base_dir).as_posix()
            except ValueError:
                pass
    raise MetadataError("unable to determine the primary file path")


def sibling_path(primary: str, filename: str) -> str:
    """Resolve a metadata file name against the primary file's directory."""

    directory = posixpath.dirname(primary)
    return posixpath.join(directory, filename) if directory else filename


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class ArtifactSetResolver:
    """Compute expected artifact paths and the completeness verdict for metadata records."""

    policy: CompletenessPolicy
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    def artifact_set(self, metadata: Mapping[str, Any], primary: str) -> list[ArtifactEntry]:
        """Return every distinct artifact path, primary first and primary sources last."""

        entries: list[ArtifactEntry] = [ArtifactEntry(primary, PRIMARY)]
        if metadata.get("original_image"):
            entries.append(
                ArtifactEntry(sibling_path(primary, str(metadata["original_image"])), ORIGINAL)
            )
        for name, size in iter_sizes(metadata):
            if not size.get("file"):
                continue
            entries.append(ArtifactEntry(sibling_path(primary, str(size["file"])), f"{SIZE}:{name}"))
            for source in iter_sources(size.get("sources")):
                entries.append(
                    ArtifactEntry(sibling_path(primary, str(source["file"])), f"{SIZE_SOURCE}:{name}")
                )
        for source in iter_sources(metadata.get("sources")):
            entries.append(ArtifactEntry(sibling_path(primary, str(source["file"])), SOURCE))

        seen: set[str] = set()
        unique: list[ArtifactEntry] = []
        for entry in entries:
            if entry.path in seen:
                continue
            seen.add(entry.path)
            unique.append(entry)
        return unique

    def is_complete(
        self, metadata: Mapping[str, Any], mime_type: Optional[str], item_id: Any = None
    ) -> bool:
        """Decide whether every artifact the host will produce is already listed."""

        category = formats.classify(mime_type)
        if category == formats.DOCUMENT:
            return self._document_complete(metadata, item_id)
        if category == formats.IMAGE:
            return self._image_complete(metadata, item_id)
        return True

    def _document_complete(self, metadata: Mapping[str, Any], item_id: Any) -> bool:
        sizes = dict(iter_sizes(metadata))
        if not sizes:
            return True

        if len(sizes) == 1 and "full" in sizes:
            self.logger.debug("Item %s has only the full preview; waiting for other sizes.", item_id)
            return False

        for required in ("thumbnail", "medium"):
            if required not in sizes:
                self.logger.debug("Item %s is missing preview size %s.", item_id, required)
                return False

        if self.policy.modern_formats_required and not has_modern_formats(metadata):
            self.logger.debug("Item %s is missing modern-format alternatives.", item_id)
            return False
        return True

    def _image_complete(self, metadata: Mapping[str, Any], item_id: Any) -> bool:
        if not metadata.get("file"):
            return False

        sizes = dict(iter_sizes(metadata))
        width = _as_int(metadata.get("width"))
        height = _as_int(metadata.get("height"))

        if not sizes:
            thumb_w, thumb_h = self.policy.thumbnail_box
            return (
                width is not None
                and height is not None
                and width <= thumb_w
                and height <= thumb_h
            )

        if metadata.get("parent_image") or EDITED_MARKER in str(metadata.get("file", "")):
            self.logger.debug("Item %s is an edited image; accepting as complete.", item_id)
            return True

        required = dict(self.policy.registered_sizes)
        if width is not None and height is not None:
            for name, (box_w, box_h) in list(required.items()):
                if width < box_w or height < box_h:
                    self.logger.debug("Item %s is too small for size %s; not required.", item_id, name)
                    del required[name]

        missing = [name for name in required if name not in sizes]
        if missing:
            self.logger.debug("Item %s is missing sizes: %s", item_id, ", ".join(missing))
            return False

        if self.policy.modern_formats_required and not has_modern_formats(metadata):
            self.logger.debug("Item %s is missing modern-format alternatives.", item_id)
            return False
        return True
