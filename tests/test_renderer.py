"""Tests for document classification and preview rendering."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from PIL import Image

from cloudfiles.media import formats, renderer as renderer_module
from cloudfiles.media.renderer import Renderer, fit_within, flatten


def test_classify_and_extension_fallback():
    assert formats.classify("application/pdf") == formats.DOCUMENT
    assert formats.classify("Image/PNG; charset=binary") == formats.IMAGE
    assert formats.classify("video/mp4") == formats.OTHER
    assert formats.document_format("text/rtf").kind == formats.WORD

    fallback = formats.document_format("application/octet-stream", "/tmp/slides.PPTX")
    assert fallback is not None and fallback.kind == formats.PRESENTATION
    assert formats.document_format("application/octet-stream", "archive.zip") is None


def test_fit_within_keeps_aspect_ratio():
    assert fit_within(2550, 3300, 300, 300) == (232, 300)
    assert fit_within(2000, 500, 768, 0) == (768, 192)
    assert fit_within(100, 50, 0, 0) == (100, 50)


def test_flatten_composites_onto_white():
    image = Image.new("RGBA", (4, 4), (255, 0, 0, 0))

    flat = flatten(image)

    assert flat.mode == "RGB"
    assert flat.getpixel((0, 0)) == (255, 255, 255)


def test_render_pdf_first_page(tmp_path, monkeypatch):
    calls = []

    def fake_convert(path, dpi, first_page, last_page):
        calls.append((Path(path).name, dpi, first_page, last_page))
        return [Image.new("RGBA", (2550, 3300), (0, 0, 0, 0))]

    monkeypatch.setattr(renderer_module, "convert_from_path", fake_convert)
    source = tmp_path / "report.pdf"
    source.write_bytes(b"%PDF-1.4")

    output = Renderer(temp_dir=tmp_path / "tmp").render(source, "application/pdf", 300, 300)

    assert output is not None
    assert output.suffix == ".jpg"
    assert output.parent == tmp_path / "tmp"
    assert calls == [("report.pdf", 300, 1, 1)]
    with Image.open(output) as preview:
        assert preview.format == "JPEG"
        assert preview.mode == "RGB"
        assert preview.size == (232, 300)
        assert "exif" not in preview.info
        assert preview.getpixel((10, 10))[0] > 240


def test_render_unknown_format_returns_none(tmp_path):
    source = tmp_path / "song.mp3"
    source.write_bytes(b"ID3")

    assert Renderer().render(source, "audio/mpeg", 150, 150) is None


def test_office_document_converts_and_cleans_up(tmp_path, monkeypatch):
    seen = {}

    def fake_run(command, **kwargs):
        outdir = Path(command[command.index("--outdir") + 1])
        seen["outdir"] = outdir
        seen["command"] = command
        (outdir / "notes.pdf").write_bytes(b"%PDF-1.4")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(renderer_module.subprocess, "run", fake_run)
    monkeypatch.setattr(
        renderer_module,
        "convert_from_path",
        lambda path, **_: [Image.new("RGB", (800, 600), "white")],
    )
    source = tmp_path / "notes.docx"
    source.write_bytes(b"PK")

    output = Renderer(temp_dir=tmp_path / "tmp").render(
        source,
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        150,
        150,
    )

    assert output is not None and output.is_file()
    assert seen["command"][0] == "soffice"
    assert "--headless" in seen["command"]
    assert not seen["outdir"].exists()
    with Image.open(output) as preview:
        assert preview.size == (150, 112)


@pytest.mark.parametrize(
    "failure",
    [FileNotFoundError("soffice"), subprocess.TimeoutExpired("soffice", 1)],
)
def test_converter_failures_return_none(tmp_path, monkeypatch, failure):
    def fake_run(command, **kwargs):
        raise failure

    monkeypatch.setattr(renderer_module.subprocess, "run", fake_run)
    source = tmp_path / "sheet.xlsx"
    source.write_bytes(b"PK")

    result = Renderer(temp_dir=tmp_path / "tmp").render(
        source, "application/vnd.ms-excel", 150, 150
    )

    assert result is None
    assert list((tmp_path / "tmp").iterdir()) == []


def test_converter_exit_code_is_a_failure(tmp_path, monkeypatch):
    monkeypatch.setattr(
        renderer_module.subprocess,
        "run",
        lambda command, **_: subprocess.CompletedProcess(command, 1, stdout="", stderr="boom"),
    )
    source = tmp_path / "deck.odp"
    source.write_bytes(b"PK")

    assert Renderer().render(source, "application/vnd.oasis.opendocument.presentation", 150, 150) is None
