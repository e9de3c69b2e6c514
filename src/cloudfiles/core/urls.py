"""Rewrite local upload URLs to their object-store equivalents."""

from __future__ import annotations

import posixpath
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from cloudfiles.media import formats
from cloudfiles.media.artifacts import iter_sizes
from cloudfiles.storage import ItemRecord
from cloudfiles.stores import ObjectStore

PREVIEW_SIZES = ("full", "thumbnail", "medium", "large")


@dataclass(slots=True)
class UrlRewriter:
    """Map URLs under `uploads_url` onto the store's public URL space."""

    store: ObjectStore
    uploads_url: str
    public_url: str

    def __post_init__(self) -> None:
        self.uploads_url = self.uploads_url.rstrip("/")
        self.public_url = self.public_url.rstrip("/")

    def rewrite_url(self, url: str) -> str:
        """Rewrite one URL; anything outside the uploads tree is returned unchanged."""

        prefix = self.uploads_url + "/"
        if not self.uploads_url or not url.startswith(prefix):
            return url
        return self.store.public_url(url[len(prefix):])

    def rewrite_srcset(self, sources: Mapping[Any, Mapping[str, Any]]) -> dict[Any, dict[str, Any]]:
        """Rewrite the `url` of every srcset candidate, keyed by width descriptor."""

        rewritten: dict[Any, dict[str, Any]] = {}
        for key, source in sources.items():
            candidate = dict(source)
            url = candidate.get("url")
            if isinstance(url, str):
                candidate["url"] = self.rewrite_url(url)
            rewritten[key] = candidate
        return rewritten

    def rewrite_content(self, content: str) -> str:
        """Replace the uploads base URL inside markup that embeds images."""

        if not content or "<img" not in content or not self.uploads_url:
            return content
        return content.replace(self.uploads_url, self.public_url)

    def item_url(self, item: ItemRecord) -> Optional[str]:
        metadata = item.metadata or {}
        path = metadata.get("file")
        if not path:
            return None
        return self.store.public_url(str(path))

    def preview_sizes(self, item: ItemRecord) -> dict[str, Any]:
        """Return the preview payload for a document item.

        The payload lists `url`, `width` and `height` per preview size; the thumbnail also serves
        as the item's icon. Images and other items get an empty payload.
        """

        metadata = item.metadata or {}
        if not formats.is_document(item.mime_type) or not metadata.get("file"):
            return {}
        directory = posixpath.dirname(str(metadata["file"]))
        sizes = dict(iter_sizes(metadata))
        payload: dict[str, Any] = {"sizes": {}}
        for name in PREVIEW_SIZES:
            entry = sizes.get(name)
            if not entry or not entry.get("file"):
                continue
            relative = posixpath.join(directory, entry["file"]) if directory else entry["file"]
            url = self.store.public_url(relative)
            payload["sizes"][name] = {
                "url": url,
                "width": entry.get("width"),
                "height": entry.get("height"),
            }
            if name == "thumbnail":
                payload["icon"] = url
        return payload
