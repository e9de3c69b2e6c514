"""Derived artifact generation for images and documents.

`ImageSizeGenerator` produces the registered size variants of an image, its `-scaled` primary
when the source exceeds the big-image threshold, and modern-format alternatives. `DocumentPreviewer`
renders the fixed preview sizes of a document through the `Renderer`. Both write next to the
source file and return what they wrote; merging into metadata is a separate step so callers can
record only the files they managed to upload.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from cloudfiles.config import MediaSettings, SizeBox
from cloudfiles.config.loader import MODERN_FORMATS
from cloudfiles.media.artifacts import iter_sizes, iter_sources, modern_formats_required
from cloudfiles.media.renderer import OUTPUT_MIME, Renderer, fit_within, flatten

SCALED_SUFFIX = "-scaled"

_PIL_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".gif": "GIF",
    ".webp": "WEBP",
    ".avif": "AVIF",
}
_MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
}


def supported_modern_formats() -> frozenset[str]:
    """Return the modern formats Pillow can encode in this environment."""

    Image.init()
    return frozenset(name for name in MODERN_FORMATS if name.upper() in Image.SAVE)


@dataclass(slots=True)
class DerivedFile:
    """A file written next to the source and the descriptor it adds to metadata.

    `existing` marks a file that is already part of the recorded set and needs no upload.
    """

    path: Path
    entry: dict[str, Any]
    existing: bool = False


@dataclass(slots=True)
class DerivedSize:
    """A generated size; `image` is None when only alternatives were added to an existing size."""

    name: str
    image: Optional[DerivedFile]
    sources: list[DerivedFile] = field(default_factory=list)

    def files(self) -> list[DerivedFile]:
        found = [self.image] if self.image is not None else []
        return found + list(self.sources)


@dataclass(slots=True)
class DerivedImages:
    """Everything one generation pass wrote."""

    sizes: list[DerivedSize] = field(default_factory=list)
    sources: list[DerivedFile] = field(default_factory=list)
    scaled: Optional[DerivedFile] = None

    def files(self) -> list[DerivedFile]:
        found: list[DerivedFile] = []
        if self.scaled is not None:
            found.append(self.scaled)
        for size in self.sizes:
            found.extend(size.files())
        found.extend(self.sources)
        return found

    def is_empty(self) -> bool:
        return not self.files()

    def merge_into(
        self,
        metadata: dict[str, Any],
        accepted: Callable[[DerivedFile], bool] = lambda _file: True,
    ) -> bool:
        """Merge accepted files into `metadata` in place; return True when anything changed."""

        changed = False
        if self.scaled is not None and accepted(self.scaled):
            current = str(metadata.get("file", ""))
            directory = posixpath.dirname(current)
            metadata["original_image"] = posixpath.basename(current)
            name = self.scaled.entry["file"]
            metadata["file"] = posixpath.join(directory, name) if directory else name
            metadata["width"] = self.scaled.entry["width"]
            metadata["height"] = self.scaled.entry["height"]
            metadata["filesize"] = self.scaled.entry.get("filesize")
            changed = True

        sizes = metadata.get("sizes")
        if not isinstance(sizes, dict):
            sizes = {}
            metadata["sizes"] = sizes
        for size in self.sizes:
            if size.image is not None:
                if not accepted(size.image):
                    continue
                entry = dict(size.image.entry)
                sizes[size.name] = entry
                changed = True
            else:
                entry = sizes.get(size.name)
                if not isinstance(entry, dict):
                    continue
            confirmed = [dict(source.entry) for source in size.sources if accepted(source)]
            if confirmed:
                entry["sources"] = _merge_sources(entry.get("sources"), confirmed)
                changed = True

        confirmed = [dict(source.entry) for source in self.sources if accepted(source)]
        if confirmed:
            metadata["sources"] = _merge_sources(metadata.get("sources"), confirmed)
            changed = True
        return changed


def _merge_sources(existing: Any, added: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged = list(iter_sources(existing))
    known = {source["file"] for source in merged}
    for source in added:
        if source["file"] not in known:
            merged.append(source)
            known.add(source["file"])
    return merged


def target_dimensions(width: int, height: int, box: SizeBox) -> Optional[tuple[int, int]]:
    """Return the output size for `box`, or None when the source does not need it.

    Sources smaller than the box in either dimension are skipped unless a crop or a fit would
    still shrink them; a source exactly matching the box gets a same-size copy.
    """

    required = not (width < box.width or height < box.height)
    if box.crop:
        target = (
            min(box.width or width, width),
            min(box.height or height, height),
        )
    else:
        target = fit_within(width, height, box.width, box.height)
        target = (min(target[0], width), min(target[1], height))
    if target == (width, height) and not required:
        return None
    return target


def save_image(image: Image.Image, path: Path, quality: int) -> None:
    """Save `image` using the format implied by the path suffix."""

    pil_format = _PIL_FORMATS.get(path.suffix.lower())
    if pil_format is None:
        raise ValueError(f"Unsupported output format: {path.suffix}")
    if pil_format == "JPEG":
        image = flatten(image)
        image.save(path, format=pil_format, quality=quality, optimize=True)
    elif pil_format in {"WEBP", "AVIF"}:
        image.save(path, format=pil_format, quality=quality)
    else:
        image.save(path, format=pil_format)


def mime_for(path: Path | str) -> str:
    return _MIME_BY_SUFFIX.get(Path(str(path)).suffix.lower(), "application/octet-stream")


@dataclass(slots=True)
class ImageSizeGenerator:
    """Produce registered sizes, the scaled primary and modern-format alternatives."""

    sizes: Mapping[str, SizeBox]
    big_image_threshold: int = 2560
    quality: int = 82
    modern_formats: Sequence[str] = ()
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    @classmethod
    def from_settings(
        cls,
        media: MediaSettings,
        *,
        supported_formats: Optional[frozenset[str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "ImageSizeGenerator":
        supported = supported_modern_formats() if supported_formats is None else supported_formats
        modern: list[str] = []
        if modern_formats_required(media, supported):
            modern = [name for name in media.modern_formats if name in supported]
        return cls(
            sizes=media.registered_sizes(),
            big_image_threshold=media.big_image_threshold,
            quality=media.image_quality,
            modern_formats=tuple(modern),
            logger=logger or logging.getLogger(__name__),
        )

    def generate(
        self, source: Path, metadata: Mapping[str, Any], *, force: bool = False
    ) -> DerivedImages:
        """Write whatever `metadata` is missing next to `source`.

        With `force`, every size and alternative is regenerated even when already recorded.
        """

        source = Path(source)
        result = DerivedImages()
        try:
            with Image.open(source) as opened:
                opened.load()
                image = ImageOps.exif_transpose(opened)
        except (OSError, UnidentifiedImageError) as exc:
            self.logger.warning("Unable to open %s for resizing: %s", source, exc)
            return result

        stem = source.stem
        if stem.endswith(SCALED_SUFFIX):
            stem = stem[: -len(SCALED_SUFFIX)]
        suffix = source.suffix.lower()
        primary = image

        if (
            self.big_image_threshold
            and not metadata.get("original_image")
            and not source.stem.endswith(SCALED_SUFFIX)
            and max(image.size) > self.big_image_threshold
        ):
            scaled = image.copy()
            scaled.thumbnail(
                (self.big_image_threshold, self.big_image_threshold), Image.Resampling.LANCZOS
            )
            scaled_path = source.with_name(f"{stem}{SCALED_SUFFIX}{suffix}")
            if self._write(scaled, scaled_path):
                result.scaled = self._describe(scaled_path, scaled.size)
                primary = scaled
                self.logger.debug("Scaled %s down to %sx%s.", source.name, *scaled.size)

        existing = dict(iter_sizes(metadata))
        written: dict[str, DerivedFile] = {}
        for name, box in self.sizes.items():
            current = existing.get(name)
            if current is not None and not force:
                if self.modern_formats and not any(True for _ in iter_sources(current.get("sources"))):
                    sources = self._recorded_alternatives(primary, current, box, source)
                    if sources:
                        result.sizes.append(DerivedSize(name, None, sources))
                continue

            target = target_dimensions(primary.width, primary.height, box)
            if target is None:
                self.logger.debug("Skipping size %s for %s; source is too small.", name, source.name)
                continue
            path = source.with_name(f"{stem}-{target[0]}x{target[1]}{suffix}")
            derived = written.get(path.name)
            resized = _resize(primary, target, box.crop)
            if derived is None:
                if not self._write(resized, path):
                    continue
                derived = self._describe(path, target)
                written[path.name] = derived
            sources = self._alternatives(resized, path) if self.modern_formats else []
            result.sizes.append(DerivedSize(name, DerivedFile(derived.path, dict(derived.entry)), sources))

        if self.modern_formats and (force or not any(True for _ in iter_sources(metadata.get("sources")))):
            if result.scaled is not None:
                result.sources = self._alternatives(primary, result.scaled.path)
            else:
                result.sources = self._alternatives(primary, source, existing=True)
        return result

    def _resized(
        self, primary: Image.Image, entry: Mapping[str, Any], box: SizeBox
    ) -> Optional[Image.Image]:
        try:
            target = (int(entry["width"]), int(entry["height"]))
        except (KeyError, TypeError, ValueError):
            return None
        return _resize(primary, target, box.crop)

    def _recorded_alternatives(
        self, primary: Image.Image, entry: Mapping[str, Any], box: SizeBox, source: Path
    ) -> list[DerivedFile]:
        """Alternatives for a size that is already recorded and was not regenerated.

        The recorded file may only exist remotely, so when it is itself in a modern format it
        is listed as its own alternative without being written or uploaded again.
        """

        recorded = source.with_name(str(entry.get("file", "")))
        own_suffix = recorded.suffix.lower()
        alternatives: list[DerivedFile] = []
        if own_suffix.lstrip(".") in self.modern_formats:
            descriptor = _source_entry(recorded)
            if entry.get("filesize") is not None:
                descriptor["filesize"] = entry["filesize"]
            alternatives.append(DerivedFile(recorded, descriptor, existing=True))
        others = [name for name in self.modern_formats if f".{name}" != own_suffix]
        if others:
            size_image = self._resized(primary, entry, box)
            if size_image is not None:
                alternatives.extend(
                    write_alternatives(size_image, recorded, others, self.quality, self.logger)
                )
        return alternatives

    def _alternatives(
        self, image: Image.Image, base_path: Path, *, existing: bool = False
    ) -> list[DerivedFile]:
        own_suffix = base_path.suffix.lower()
        alternatives: list[DerivedFile] = []
        if own_suffix.lstrip(".") in self.modern_formats:
            # Already in a modern format; the file serves as its own alternative.
            alternatives.append(DerivedFile(base_path, _source_entry(base_path), existing))
        others = [name for name in self.modern_formats if f".{name}" != own_suffix]
        alternatives.extend(write_alternatives(image, base_path, others, self.quality, self.logger))
        return alternatives

    def _write(self, image: Image.Image, path: Path) -> bool:
        return _save(image, path, self.quality, self.logger)

    @staticmethod
    def _describe(path: Path, size: tuple[int, int]) -> DerivedFile:
        return DerivedFile(
            path,
            {
                "file": path.name,
                "width": size[0],
                "height": size[1],
                "mime-type": mime_for(path),
                "filesize": _filesize(path),
            },
        )


def write_alternatives(
    image: Image.Image,
    base_path: Path,
    formats: Sequence[str],
    quality: int,
    logger: logging.Logger,
) -> list[DerivedFile]:
    """Write `image` beside `base_path` once per modern format; return the files written."""

    written: list[DerivedFile] = []
    for name in formats:
        path = base_path.with_suffix(f".{name}")
        if _save(image, path, quality, logger):
            written.append(DerivedFile(path, _source_entry(path)))
    return written


def _save(image: Image.Image, path: Path, quality: int, logger: logging.Logger) -> bool:
    try:
        save_image(image, path, quality)
    except (OSError, ValueError) as exc:
        logger.warning("Unable to write %s: %s", path, exc)
        path.unlink(missing_ok=True)
        return False
    return True


def _source_entry(path: Path) -> dict[str, Any]:
    return {"file": path.name, "filesize": _filesize(path), "mime-type": mime_for(path)}


def _resize(image: Image.Image, target: tuple[int, int], crop: bool) -> Image.Image:
    if target == image.size:
        return image.copy()
    if crop:
        return ImageOps.fit(image, target, Image.Resampling.LANCZOS)
    return image.resize(target, Image.Resampling.LANCZOS)


def _filesize(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except OSError:
        return None


@dataclass(slots=True)
class DocumentPreviewer:
    """Render the document preview sizes (`full`, `thumbnail`, `medium`, `large`).

    With modern formats configured, each preview also gets webp/avif alternatives, and the
    `full` preview's alternatives double as the item's own `sources`.
    """

    renderer: Renderer
    sizes: Mapping[str, SizeBox]
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    modern_formats: Sequence[str] = ()
    quality: int = 82

    def needs_rendering(self, metadata: Mapping[str, Any]) -> bool:
        existing = dict(iter_sizes(metadata))
        return any(self._missing(name, existing, metadata) for name in self.sizes)

    def iter_missing(
        self,
        source: Path,
        mime_type: Optional[str],
        metadata: Mapping[str, Any],
        *,
        force: bool = False,
    ) -> Iterator[DerivedSize]:
        """Render each missing size to `{stem}-{size}.jpg` beside `source`, one at a time."""

        source = Path(source)
        existing = dict(iter_sizes(metadata))
        for name, box in self.sizes.items():
            if not force and not self._missing(name, existing, metadata):
                continue
            rendered = self._render(source, mime_type, name, box)
            if rendered is not None:
                yield rendered

    def render_missing(
        self,
        source: Path,
        mime_type: Optional[str],
        metadata: Mapping[str, Any],
        *,
        force: bool = False,
    ) -> DerivedImages:
        derived = DerivedImages(sizes=list(self.iter_missing(source, mime_type, metadata, force=force)))
        derived.sources = self.item_sources(derived.sizes)
        return derived

    @staticmethod
    def item_sources(sizes: Sequence[DerivedSize]) -> list[DerivedFile]:
        """The item-level alternatives: those of the `full` preview."""

        for size in sizes:
            if size.name == "full":
                return [DerivedFile(alt.path, dict(alt.entry), alt.existing) for alt in size.sources]
        return []

    def generate(
        self, source: Path, mime_type: Optional[str], metadata: dict[str, Any]
    ) -> dict[str, Any]:
        """Render missing previews for a local document and record them all."""

        self.render_missing(source, mime_type, metadata).merge_into(metadata)
        return metadata

    def _missing(self, name: str, existing: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        if name not in existing:
            return True
        if not self.modern_formats:
            return False
        if not any(True for _ in iter_sources(existing[name].get("sources"))):
            return True
        return name == "full" and not any(True for _ in iter_sources(metadata.get("sources")))

    def _render(
        self, source: Path, mime_type: Optional[str], name: str, box: SizeBox
    ) -> Optional[DerivedSize]:
        thumbnail = self.renderer.render(source, mime_type, box.width, box.height)
        if thumbnail is None or not thumbnail.is_file():
            self.logger.debug("No %s preview produced for %s.", name, source.name)
            return None

        destination = source.with_name(f"{source.stem}-{name}.jpg")
        try:
            shutil.move(os.fspath(thumbnail), os.fspath(destination))
        except OSError as exc:
            self.logger.warning("Unable to place preview %s: %s", destination, exc)
            thumbnail.unlink(missing_ok=True)
            return None

        try:
            with Image.open(destination) as image:
                image.load()
                width, height = image.size
                sources = (
                    write_alternatives(image, destination, self.modern_formats, self.quality, self.logger)
                    if self.modern_formats
                    else []
                )
        except (OSError, UnidentifiedImageError) as exc:
            self.logger.warning("Rendered preview %s is unreadable: %s", destination, exc)
            destination.unlink(missing_ok=True)
            return None

        entry: dict[str, Any] = {
            "file": destination.name,
            "width": width,
            "height": height,
            "mime-type": OUTPUT_MIME,
        }
        if name == "full":
            entry["filesize"] = destination.stat().st_size
        return DerivedSize(name, DerivedFile(destination, entry), sources)
