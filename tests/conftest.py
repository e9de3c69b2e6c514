"""Shared fixtures: an in-memory object store and a wired sync engine."""

from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image

from cloudfiles.config import Config
from cloudfiles.config.loader import ConfigModel
from cloudfiles.core import SyncEngine
from cloudfiles.media.images import supported_modern_formats
from cloudfiles.media.renderer import fit_within
from cloudfiles.storage import Database
from cloudfiles.stores import ObjectStoreError
from cloudfiles.stores.base import clamp_presign_minutes


class FakeStore:
    """Dictionary-backed stand-in for the S3 client."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self.deletes: list[str] = []
        self.fail_uploads: set[str] = set()
        self.check_error: Exception | None = None

    def exists(self, path: str) -> bool:
        return path in self.objects

    def check(self, path: str) -> bool:
        if self.check_error is not None:
            raise ObjectStoreError(str(self.check_error))
        return path in self.objects

    def upload(self, local_path: Path, remote_path: str) -> bool:
        if remote_path in self.fail_uploads or not Path(local_path).is_file():
            return False
        self.objects[remote_path] = Path(local_path).read_bytes()
        self.uploads.append(remote_path)
        return True

    def download(self, remote_path: str, local_path: Path) -> bool:
        if remote_path not in self.objects:
            return False
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.objects[remote_path])
        self.downloads.append(remote_path)
        return True

    def delete(self, remote_path: str) -> bool:
        self.deletes.append(remote_path)
        self.objects.pop(remote_path, None)
        return True

    def public_url(self, path: str) -> str:
        return f"https://cdn.example.com/media/{path.lstrip('/')}"

    def presigned_upload_url(self, path: str, content_type: str, ttl_minutes: int = 60) -> str:
        return f"https://s3.example.com/bucket/media/{path}?expires={clamp_presign_minutes(ttl_minutes) * 60}"


class FakeRenderer:
    """Renders a blank letter-sized page scaled into the box."""

    def __init__(self, tmp_dir: Path) -> None:
        self.tmp_dir = tmp_dir
        self.calls: list[tuple[str, int, int]] = []

    def render(self, source_path, mime_type, box_width, box_height):
        self.calls.append((Path(source_path).name, box_width, box_height))
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        size = fit_within(2550, 3300, box_width, box_height)
        output = self.tmp_dir / f"render-{len(self.calls)}.jpg"
        Image.new("RGB", size, "white").save(output, format="JPEG", quality=80)
        return output


def make_config(tmp_path: Path, **media) -> Config:
    payload = {
        "storage": {"path": str(tmp_path / "state.sqlite")},
        "uploads": {
            "base_path": str(tmp_path / "uploads"),
            "base_url": "https://example.com/uploads",
            "temp_path": str(tmp_path / "tmp"),
        },
        "object_store": {"bucket": "media", "public_url": "https://cdn.example.com", "root": "media"},
        "media": media,
    }
    return Config(model=ConfigModel.model_validate(payload), raw=payload)


def write_image(path: Path, size: tuple[int, int], color: str = "navy") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "PNG" if path.suffix.lower() == ".png" else "JPEG"
    Image.new("RGB", size, color).save(path, format=fmt)
    return path


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def config(tmp_path) -> Config:
    return make_config(tmp_path)


@pytest.fixture
def database(tmp_path) -> Database:
    db = Database(tmp_path / "state.sqlite")
    db.initialize()
    return db


@pytest.fixture
def renderer(tmp_path) -> FakeRenderer:
    return FakeRenderer(tmp_path / "renders")


@pytest.fixture
def engine(config, database, store, renderer) -> SyncEngine:
    sync = SyncEngine.from_config(
        config, database=database, store=store, supported_formats=frozenset()
    )
    sync.previews.renderer = renderer
    return sync


@pytest.fixture
def webp_engine(tmp_path, database, store, renderer) -> SyncEngine:
    """An engine that requires webp alternatives on every item and size."""

    if "webp" not in supported_modern_formats():
        pytest.skip("Pillow was built without WebP support")
    webp_config = make_config(tmp_path, output_format="webp", modern_formats=["webp"])
    sync = SyncEngine.from_config(
        webp_config, database=database, store=store, supported_formats=frozenset({"webp"})
    )
    sync.previews.renderer = renderer
    return sync
