"""Tests for presigned direct uploads and their registration."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cloudfiles.core import DirectUploads, HostEvents, ThumbnailQueue
from cloudfiles.core.engine import DEFERRED, GENERATED, PENDING_FLAG, SYNC_ERROR_FLAG
from cloudfiles.core.uploads import sanitize_filename

from conftest import write_image


@pytest.fixture
def uploads(engine, database, store, config):
    return DirectUploads(
        database=database,
        store=store,
        queue=ThumbnailQueue(database, engine),
        events=HostEvents(database, engine),
        base_dir=engine.base_dir,
        temp_dir=config.uploads.temp_path,
        clock=lambda: datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc),
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("My Photo.JPG", "My-Photo.JPG"),
        ("C:\\Users\\me\\scan (1).pdf", "scan-1.pdf"),
        ("../../etc/passwd", "passwd"),
        ("...", ""),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_prepare_reserves_dated_key(uploads):
    prepared = uploads.prepare("My Photo.JPG", "image/jpeg")

    assert prepared.key == "2024/05/My-Photo.JPG"
    assert prepared.public_url == "https://cdn.example.com/media/2024/05/My-Photo.JPG"
    assert prepared.upload_url == "https://s3.example.com/bucket/media/2024/05/My-Photo.JPG?expires=3600"
    assert prepared.as_dict()["content_type"] == "image/jpeg"


def test_prepare_avoids_existing_names(uploads, store, engine):
    store.objects["2024/05/a.jpg"] = b"remote"
    write_image(engine.base_dir / "2024/05/a-1.jpg", (10, 10))

    assert uploads.prepare("a.jpg", "image/jpeg").key == "2024/05/a-2.jpg"


def test_prepare_requires_name_and_type(uploads):
    with pytest.raises(ValueError):
        uploads.prepare("...", "image/jpeg")
    with pytest.raises(ValueError):
        uploads.prepare("a.jpg", "")


def test_registered_document_is_queued_then_generated(uploads, database, store):
    store.objects["2024/05/report.pdf"] = b"%PDF-1.4"

    item = uploads.register(
        filename="report.pdf", key="2024/05/report.pdf", content_type="application/pdf", file_size=8
    )

    assert item.title == "report"
    assert item.metadata == {"file": "2024/05/report.pdf", "filesize": 8}
    assert uploads.queue.pending() == [item.id]
    assert database.get_flag(item.id, PENDING_FLAG) == "1"

    [outcome] = uploads.queue.drain()

    assert outcome.result.status == GENERATED
    assert database.get_flag(item.id, PENDING_FLAG) is None
    assert "2024/05/report-thumbnail.jpg" in store.objects
    assert set(database.get_metadata(item.id)["sizes"]) == {"full", "thumbnail", "medium", "large"}


def test_registered_image_is_measured_and_deferred(uploads, database, store, tmp_path):
    source = write_image(tmp_path / "photo.jpg", (1200, 800))
    store.objects["2024/05/photo.jpg"] = source.read_bytes()

    item = uploads.register(filename="photo.jpg", key="2024/05/photo.jpg", content_type="image/jpeg")

    metadata = database.get_metadata(item.id)
    assert (metadata["width"], metadata["height"]) == (1200, 800)
    assert metadata["filesize"] == source.stat().st_size
    assert uploads.queue.pending() == [item.id]
    assert uploads.events.last_result.status == DEFERRED
    assert store.downloads == ["2024/05/photo.jpg"]


def test_unreadable_image_is_flagged_and_not_queued(uploads, database):
    item = uploads.register(filename="ghost.png", key="2024/05/ghost.png", content_type="image/png")

    assert database.get_flag(item.id, SYNC_ERROR_FLAG) == "download failed"
    assert database.get_flag(item.id, PENDING_FLAG) is None
    assert uploads.queue.pending() == []


def test_other_types_are_registered_without_queueing(uploads, database):
    item = uploads.register(filename="song.mp3", key="2024/05/song.mp3", content_type="audio/mpeg")

    assert uploads.queue.pending() == []
    assert database.get_metadata(item.id) == {"file": "2024/05/song.mp3", "filesize": 0}
