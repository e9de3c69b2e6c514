"""CLI tests driven through Typer's CliRunner with an in-memory object store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from cloudfiles import get_version
from cloudfiles.cli import app as app_module
from cloudfiles.storage import Database

from conftest import write_image


@pytest.fixture
def cli(tmp_path, store, monkeypatch):
    config_path = tmp_path / "cloudfiles.yaml"
    payload = {
        "storage": {"path": str(tmp_path / "state.sqlite")},
        "uploads": {
            "base_path": str(tmp_path / "uploads"),
            "base_url": "https://example.com/uploads",
            "temp_path": str(tmp_path / "tmp"),
        },
        "object_store": {"bucket": "media", "public_url": "https://cdn.example.com", "root": "media"},
    }
    config_path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    monkeypatch.setattr(app_module, "_build_store", lambda config, logger: store)
    runner = CliRunner()
    base_args = ["--config", str(config_path), "--log-path", str(tmp_path / "logs")]

    def invoke(*args: str, **kwargs):
        return runner.invoke(app_module.app, [*base_args, *args], **kwargs)

    return invoke


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(tmp_path / "state.sqlite")
    database.initialize()
    return database


def test_version_command(cli):
    result = cli("version")

    assert result.exit_code == 0
    assert result.output.strip() == get_version()


def test_config_show_json(cli):
    result = cli("config", "show", "--format", "json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["object_store"]["bucket"] == "media"
    assert data["media"]["thumbnail"] == {"width": 150, "height": 150, "crop": True}


def test_bad_config_is_a_usage_error(tmp_path):
    result = CliRunner().invoke(app_module.app, ["--config", str(tmp_path / "nope.yaml"), "version"])

    assert result.exit_code != 0


def test_migrate_without_items_warns(cli):
    result = cli("migrate")

    assert result.exit_code == 0
    assert "No items found to migrate" in result.output


def test_migrate_reports_tally(cli, db, tmp_path, store):
    base = tmp_path / "uploads"
    write_image(base / "2024/05/icon.jpg", (100, 100))
    db.add_item(
        mime_type="image/jpeg",
        attached_file=str(base / "2024/05/icon.jpg"),
        metadata={"file": "2024/05/icon.jpg", "width": 100, "height": 100},
    )
    db.add_item(
        mime_type="application/pdf",
        attached_file=None,
        metadata={"file": "2024/05/gone.pdf"},
    )

    result = cli("migrate", "--batch-size", "1")

    assert result.exit_code == 0
    assert "Migration complete: success=1 failed=0 skipped=1" in result.output
    assert store.uploads == ["2024/05/icon.jpg"]
    assert not (base / "2024/05/icon.jpg").exists()


def test_enqueue_and_drain(cli, db):
    item = db.add_item(mime_type="text/plain", attached_file=None, metadata={"file": "2024/05/a.txt"})

    queued = cli("enqueue", str(item.id), "999")
    assert queued.exit_code == 0
    assert f"Item {item.id}: queued" in queued.output
    assert "Item 999 does not exist." in queued.output
    assert cli("enqueue", str(item.id)).output.strip().endswith("already queued")

    drained = cli("drain")
    assert drained.exit_code == 0
    assert "Processed 1 item(s): success=0 failed=0 skipped=1; 0 left." in drained.output

    empty = cli("drain")
    assert "The queue is empty." in empty.output


def test_regenerate_without_matches_warns(cli, db):
    db.add_item(mime_type="audio/mpeg", attached_file=None, metadata={"file": "2024/05/a.mp3"})

    result = cli("regenerate", "--type", "image/")

    assert result.exit_code == 0
    assert "No matching items to regenerate." in result.output


def test_presign_prints_json(cli):
    result = cli("presign", "2024/05/a.jpg", "--content-type", "image/jpeg", "--minutes", "10")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["public_url"] == "https://cdn.example.com/media/2024/05/a.jpg"
    assert data["upload_url"].endswith("expires=600")


def test_delete_command(cli, db, store):
    store.objects["2024/05/a.mp3"] = b"ID3"
    item = db.add_item(mime_type="audio/mpeg", attached_file=None, metadata={"file": "2024/05/a.mp3"})

    assert cli("delete", "999").exit_code == 1

    result = cli("delete", str(item.id))
    assert result.exit_code == 0
    assert "removed=1 failed=0" in result.output
    assert store.objects == {}
    assert db.get_item(item.id) is None


def test_url_and_rewrite_commands(cli, db):
    item = db.add_item(
        mime_type="application/pdf",
        attached_file=None,
        metadata={
            "file": "2024/05/report.pdf",
            "sizes": {"thumbnail": {"file": "report-thumbnail.jpg", "width": 116, "height": 150}},
        },
    )

    described = cli("url", str(item.id))
    assert described.exit_code == 0
    payload = json.loads(described.stdout)
    assert payload["url"] == "https://cdn.example.com/media/2024/05/report.pdf"
    assert payload["icon"] == "https://cdn.example.com/media/2024/05/report-thumbnail.jpg"

    markup = '<img src="https://example.com/uploads/2024/05/a.jpg">'
    rewritten = cli("rewrite", "-", input=markup)
    assert rewritten.exit_code == 0
    assert rewritten.stdout == '<img src="https://cdn.example.com/media/2024/05/a.jpg">'


def test_register_command(cli, tmp_path, store):
    path = write_image(Path(tmp_path / "uploads" / "2024/05/tiny.jpg"), (80, 60))

    result = cli("register", str(path))

    assert result.exit_code == 0
    assert "(image/jpeg): synced" in result.output
    assert store.uploads == ["2024/05/tiny.jpg"]
