"""Tests for derived image sizes and document previews."""

from __future__ import annotations

import pytest
from PIL import Image

from cloudfiles.config import MediaSettings, SizeBox
from cloudfiles.media.images import (
    DocumentPreviewer,
    ImageSizeGenerator,
    supported_modern_formats,
    target_dimensions,
)

from conftest import FakeRenderer, write_image


@pytest.mark.parametrize(
    "size,box,expected",
    [
        ((1200, 800), SizeBox(width=150, height=150, crop=True), (150, 150)),
        ((1200, 800), SizeBox(width=300, height=300), (300, 200)),
        ((2000, 500), SizeBox(width=768, height=0), (768, 192)),
        ((300, 300), SizeBox(width=300, height=300), (300, 300)),
        ((200, 100), SizeBox(width=150, height=150, crop=True), (150, 100)),
        ((200, 100), SizeBox(width=300, height=300), None),
        ((100, 100), SizeBox(width=150, height=150, crop=True), None),
    ],
)
def test_target_dimensions(size, box, expected):
    assert target_dimensions(*size, box) == expected


def test_generates_registered_sizes(tmp_path):
    source = write_image(tmp_path / "photo.jpg", (1200, 800))
    generator = ImageSizeGenerator.from_settings(MediaSettings(), supported_formats=frozenset())

    derived = generator.generate(source, {"file": "2024/05/photo.jpg", "width": 1200, "height": 800})
    metadata = {"file": "2024/05/photo.jpg", "width": 1200, "height": 800}
    assert derived.merge_into(metadata) is True

    assert derived.scaled is None
    assert {name: entry["file"] for name, entry in metadata["sizes"].items()} == {
        "thumbnail": "photo-150x150.jpg",
        "medium": "photo-300x200.jpg",
        "medium_large": "photo-768x512.jpg",
        "large": "photo-1024x683.jpg",
    }
    assert metadata["sizes"]["medium"]["mime-type"] == "image/jpeg"
    assert metadata["sizes"]["medium"]["filesize"] > 0
    with Image.open(tmp_path / "photo-150x150.jpg") as thumb:
        assert thumb.size == (150, 150)
    assert "sources" not in metadata


def test_existing_sizes_are_skipped_unless_forced(tmp_path):
    source = write_image(tmp_path / "photo.jpg", (1200, 800))
    generator = ImageSizeGenerator.from_settings(MediaSettings(), supported_formats=frozenset())
    metadata = {
        "file": "photo.jpg",
        "sizes": {"thumbnail": {"file": "photo-150x150.jpg", "width": 150, "height": 150}},
    }

    derived = generator.generate(source, metadata)
    assert "thumbnail" not in [size.name for size in derived.sizes]

    forced = generator.generate(source, metadata, force=True)
    assert "thumbnail" in [size.name for size in forced.sizes]


def test_big_images_get_a_scaled_primary(tmp_path):
    source = write_image(tmp_path / "photo.jpg", (3000, 2000))
    generator = ImageSizeGenerator.from_settings(MediaSettings(), supported_formats=frozenset())
    metadata = {"file": "2024/05/photo.jpg", "width": 3000, "height": 2000}

    derived = generator.generate(source, metadata)
    derived.merge_into(metadata)

    assert metadata["file"] == "2024/05/photo-scaled.jpg"
    assert metadata["original_image"] == "photo.jpg"
    assert (metadata["width"], metadata["height"]) == (2560, 1707)
    assert metadata["sizes"]["large"]["file"] == "photo-1024x683.jpg"

    again = generator.generate(tmp_path / "photo-scaled.jpg", metadata)
    assert again.scaled is None
    assert again.is_empty()


def test_modern_alternatives_for_primary_and_sizes(tmp_path):
    if "webp" not in supported_modern_formats():
        pytest.skip("Pillow was built without WebP support")
    source = write_image(tmp_path / "photo.png", (400, 300))
    media = MediaSettings(output_format="webp", modern_formats=["webp"])
    generator = ImageSizeGenerator.from_settings(media, supported_formats=frozenset({"webp"}))
    metadata = {"file": "photo.png", "width": 400, "height": 300}

    generator.generate(source, metadata).merge_into(metadata)

    assert metadata["sources"] == [
        {"file": "photo.webp", "filesize": (tmp_path / "photo.webp").stat().st_size, "mime-type": "image/webp"}
    ]
    assert set(metadata["sizes"]) == {"thumbnail", "medium"}
    assert metadata["sizes"]["medium"]["sources"][0]["file"] == "photo-300x225.webp"


def test_merge_only_records_accepted_files(tmp_path):
    source = write_image(tmp_path / "photo.jpg", (1200, 800))
    generator = ImageSizeGenerator.from_settings(MediaSettings(), supported_formats=frozenset())
    derived = generator.generate(source, {"file": "photo.jpg"})
    metadata = {"file": "photo.jpg", "sizes": {"custom": {"file": "photo-custom.jpg"}}}

    derived.merge_into(metadata, lambda derived_file: derived_file.entry["file"] != "photo-300x200.jpg")

    assert "medium" not in metadata["sizes"]
    assert "custom" in metadata["sizes"]
    assert "thumbnail" in metadata["sizes"]


def test_document_previewer_renders_missing_sizes(tmp_path):
    source = tmp_path / "docs" / "report.pdf"
    source.parent.mkdir()
    source.write_bytes(b"%PDF-1.4")
    fake = FakeRenderer(tmp_path / "renders")
    previewer = DocumentPreviewer(fake, MediaSettings().document_sizes())
    metadata = {"file": "docs/report.pdf", "sizes": {"large": {"file": "report-large.jpg"}}}

    previewer.generate(source, "application/pdf", metadata)

    assert [call[1:] for call in fake.calls] == [(1500, 1500), (150, 150), (300, 300)]
    sizes = metadata["sizes"]
    assert sizes["full"]["file"] == "report-full.jpg"
    assert sizes["full"]["filesize"] == (source.parent / "report-full.jpg").stat().st_size
    assert sizes["thumbnail"] == {
        "file": "report-thumbnail.jpg",
        "width": 116,
        "height": 150,
        "mime-type": "image/jpeg",
    }
    assert (sizes["medium"]["width"], sizes["medium"]["height"]) == (232, 300)
    assert sizes["large"] == {"file": "report-large.jpg"}
    assert list((tmp_path / "renders").iterdir()) == []


def test_document_previews_get_modern_alternatives(tmp_path):
    if "webp" not in supported_modern_formats():
        pytest.skip("Pillow was built without WebP support")
    source = tmp_path / "report.pdf"
    source.write_bytes(b"%PDF-1.4")
    previewer = DocumentPreviewer(
        FakeRenderer(tmp_path / "renders"), MediaSettings().document_sizes(), modern_formats=("webp",)
    )
    metadata = {"file": "report.pdf"}

    previewer.generate(source, "application/pdf", metadata)

    for name in ("full", "thumbnail", "medium", "large"):
        [alternative] = metadata["sizes"][name]["sources"]
        assert alternative["file"] == f"report-{name}.webp"
        assert alternative["filesize"] == (tmp_path / f"report-{name}.webp").stat().st_size
    assert [source["file"] for source in metadata["sources"]] == ["report-full.webp"]
    assert not previewer.needs_rendering(metadata)


def test_recorded_size_in_a_modern_format_is_not_rewritten(tmp_path):
    if "webp" not in supported_modern_formats():
        pytest.skip("Pillow was built without WebP support")
    source = tmp_path / "pic.webp"
    Image.new("RGB", (400, 300), "navy").save(source, format="WEBP")
    media = MediaSettings(output_format="webp", modern_formats=["webp"])
    generator = ImageSizeGenerator.from_settings(media, supported_formats=frozenset({"webp"}))
    metadata = {
        "file": "pic.webp",
        "width": 400,
        "height": 300,
        "sizes": {"thumbnail": {"file": "pic-150x150.webp", "width": 150, "height": 150, "filesize": 512}},
    }

    derived = generator.generate(source, metadata)

    thumbnail = next(size for size in derived.sizes if size.name == "thumbnail")
    assert thumbnail.image is None
    [alternative] = thumbnail.sources
    assert alternative.existing
    assert alternative.entry == {"file": "pic-150x150.webp", "filesize": 512, "mime-type": "image/webp"}
    assert not (tmp_path / "pic-150x150.webp").exists()
    assert [source.existing for source in derived.sources] == [True]
