"""Tests for the host lifecycle hooks."""

from __future__ import annotations

import pytest

from cloudfiles.core import HostEvents
from cloudfiles.core.engine import SYNCED

from conftest import write_image


@pytest.fixture
def events(database, engine):
    return HostEvents(database, engine)


def test_register_image_generates_sizes_and_evicts(events, engine, database, store):
    path = write_image(engine.base_dir / "2024/05/pic.png", (400, 300))

    item = events.register_file(path)

    assert item.mime_type == "image/png"
    assert item.title == "pic"
    assert events.last_result.status == SYNCED
    metadata = database.get_metadata(item.id)
    assert metadata["file"] == "2024/05/pic.png"
    assert (metadata["width"], metadata["height"]) == (400, 300)
    assert set(metadata["sizes"]) == {"thumbnail", "medium"}
    assert sorted(store.uploads) == [
        "2024/05/pic-150x150.png",
        "2024/05/pic-300x225.png",
        "2024/05/pic.png",
    ]
    assert list((engine.base_dir / "2024/05").iterdir()) == []


def test_register_document_renders_previews_before_sync(events, engine, database, store):
    path = engine.base_dir / "2024/05/report.pdf"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"%PDF-1.4")

    item = events.register_file(path)

    assert events.last_result.status == SYNCED
    assert set(database.get_metadata(item.id)["sizes"]) == {"full", "thumbnail", "medium", "large"}
    assert "2024/05/report.pdf" in store.objects
    assert "2024/05/report-medium.jpg" in store.objects
    assert not path.exists()


def test_register_rejects_files_outside_the_upload_tree(events, engine, tmp_path):
    outside = write_image(tmp_path / "elsewhere" / "a.jpg", (10, 10))

    with pytest.raises(ValueError):
        events.register_file(outside)
    with pytest.raises(FileNotFoundError):
        events.register_file(engine.base_dir / "2024/05/missing.jpg")


def test_metadata_finalized_returns_payload_unchanged(events, database):
    item = database.add_item(mime_type="audio/mpeg", attached_file=None)
    metadata = {"file": "2024/05/song.mp3"}

    assert events.metadata_finalized(item.id, metadata) is metadata
    assert events.last_result.uploaded == []


def test_item_deleted_sweeps_remote_and_local_copies(events, engine, database, store):
    path = write_image(engine.base_dir / "2024/05/pic.png", (400, 300))
    item = events.register_file(path)
    leftover = write_image(engine.base_dir / "2024/05/pic-150x150.png", (150, 150))

    result = events.item_deleted(item.id)

    assert sorted(result.deleted) == [
        "2024/05/pic-150x150.png",
        "2024/05/pic-300x225.png",
        "2024/05/pic.png",
    ]
    assert store.objects == {}
    assert not leftover.exists()
    assert database.get_item(item.id) is None
    assert events.item_deleted(item.id).deleted == []


def test_register_image_with_webp_alternatives_syncs(webp_engine, database, store):
    events = HostEvents(database, webp_engine)
    path = write_image(webp_engine.base_dir / "2024/05/pic.png", (400, 300))

    item = events.register_file(path)

    assert events.last_result.status == SYNCED
    metadata = database.get_metadata(item.id)
    assert [source["file"] for source in metadata["sources"]] == ["pic.webp"]
    assert metadata["sizes"]["thumbnail"]["sources"][0]["file"] == "pic-150x150.webp"
    assert metadata["sizes"]["medium"]["sources"][0]["file"] == "pic-300x225.webp"
    assert sorted(store.uploads) == [
        "2024/05/pic-150x150.png",
        "2024/05/pic-150x150.webp",
        "2024/05/pic-300x225.png",
        "2024/05/pic-300x225.webp",
        "2024/05/pic.png",
        "2024/05/pic.webp",
    ]
    assert list((webp_engine.base_dir / "2024/05").iterdir()) == []


def test_register_document_with_webp_alternatives_syncs(webp_engine, database, store):
    events = HostEvents(database, webp_engine)
    path = webp_engine.base_dir / "2024/05/report.pdf"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"%PDF-1.4")

    item = events.register_file(path, mime_type="application/pdf")

    assert events.last_result.status == SYNCED
    metadata = database.get_metadata(item.id)
    for name in ("full", "thumbnail", "medium", "large"):
        assert metadata["sizes"][name]["sources"] == [
            {
                "file": f"report-{name}.webp",
                "filesize": metadata["sizes"][name]["sources"][0]["filesize"],
                "mime-type": "image/webp",
            }
        ]
        assert f"2024/05/report-{name}.jpg" in store.objects
        assert f"2024/05/report-{name}.webp" in store.objects
    assert [source["file"] for source in metadata["sources"]] == ["report-full.webp"]
    assert "2024/05/report.pdf" in store.objects
    assert list((webp_engine.base_dir / "2024/05").iterdir()) == []
