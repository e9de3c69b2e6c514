"""Single-page raster previews for documents.

Office formats are converted to PDF with a headless LibreOffice process, PDFs are rasterised
with pdf2image (poppler) and the first page is flattened onto white, scaled into the requested
box and written as a baseline JPEG without metadata.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pdf2image import convert_from_path
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from PIL import Image, UnidentifiedImageError

from cloudfiles.config import MediaSettings
from cloudfiles.media import formats

OUTPUT_MIME = "image/jpeg"
OUTPUT_SUFFIX = ".jpg"


class RenderError(Exception):
    """A document could not be turned into a raster."""


def flatten(image: Image.Image) -> Image.Image:
    """Composite transparency onto white and return an RGB image."""

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def fit_within(width: int, height: int, box_width: int, box_height: int) -> tuple[int, int]:
    """Scale (width, height) to fit the box, keeping aspect ratio; a zero box side is unbounded."""

    if width <= 0 or height <= 0:
        return width, height
    ratios = []
    if box_width > 0:
        ratios.append(box_width / width)
    if box_height > 0:
        ratios.append(box_height / height)
    if not ratios:
        return width, height
    ratio = min(ratios)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


@dataclass(slots=True)
class Renderer:
    """Render the first page of a document into a JPEG that fits a pixel box."""

    dpi: int = 300
    quality: int = 80
    office_converter: str = "soffice"
    office_timeout: float = 120.0
    temp_dir: Optional[Path] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    @classmethod
    def from_settings(
        cls,
        media: MediaSettings,
        *,
        temp_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "Renderer":
        return cls(
            dpi=media.render_dpi,
            quality=media.jpeg_quality,
            office_converter=media.office_converter,
            office_timeout=media.office_timeout_seconds,
            temp_dir=temp_dir,
            logger=logger or logging.getLogger(__name__),
        )

    def render(
        self,
        source_path: Path,
        mime_type: Optional[str],
        box_width: int,
        box_height: int,
    ) -> Optional[Path]:
        """Return the path of a temporary JPEG, or None when no preview can be made.

        The caller owns the returned file. Intermediate PDFs are always removed.
        """

        source_path = Path(source_path)
        document = formats.document_format(mime_type, source_path.name)
        if document is None:
            self.logger.debug("No renderer for %s (%s).", source_path, mime_type)
            return None
        if not source_path.is_file():
            self.logger.warning("Cannot render %s; file does not exist.", source_path)
            return None

        scratch: list[Path] = []
        try:
            if document.kind == formats.PDF:
                pdf_path = source_path
            else:
                pdf_path = self._convert_to_pdf(source_path, scratch)
            page = self._rasterize_first_page(pdf_path)
            return self._write_preview(page, box_width, box_height)
        except RenderError as exc:
            self.logger.warning("Preview rendering failed for %s: %s", source_path, exc)
            return None
        finally:
            for path in scratch:
                shutil.rmtree(path, ignore_errors=True)

    def _convert_to_pdf(self, source_path: Path, scratch: list[Path]) -> Path:
        outdir = Path(tempfile.mkdtemp(prefix="cloudfiles-convert-", dir=self._temp_root()))
        scratch.append(outdir)
        command = [
            self.office_converter,
            f"-env:UserInstallation={(outdir / 'profile').as_uri()}",
            "--headless",
            "--convert-to",
            "pdf",
            "--outdir",
            str(outdir),
            str(source_path),
        ]
        self.logger.debug("Converting %s to PDF: %s", source_path, " ".join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.office_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RenderError(f"converter {self.office_converter!r} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderError(f"conversion timed out after {self.office_timeout}s") from exc

        pdf_path = outdir / f"{source_path.stem}.pdf"
        if completed.returncode != 0 or not pdf_path.is_file():
            detail = (completed.stderr or completed.stdout or "").strip()
            raise RenderError(f"conversion exited with {completed.returncode}: {detail}")
        return pdf_path

    def _rasterize_first_page(self, pdf_path: Path) -> Image.Image:
        try:
            pages = convert_from_path(str(pdf_path), dpi=self.dpi, first_page=1, last_page=1)
        except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError) as exc:
            raise RenderError(f"unable to rasterise {pdf_path.name}: {exc}") from exc
        if not pages:
            raise RenderError(f"{pdf_path.name} has no pages")
        return pages[0]

    def _write_preview(self, page: Image.Image, box_width: int, box_height: int) -> Path:
        image = flatten(page)
        target = fit_within(image.width, image.height, box_width, box_height)
        if target != image.size:
            image = image.resize(target, Image.Resampling.LANCZOS)

        handle = tempfile.NamedTemporaryFile(
            prefix="cloudfiles-preview-", suffix=OUTPUT_SUFFIX, dir=self._temp_root(), delete=False
        )
        output = Path(handle.name)
        try:
            with handle:
                image.save(handle, format="JPEG", quality=self.quality, optimize=True)
        except (OSError, ValueError) as exc:
            output.unlink(missing_ok=True)
            raise RenderError(f"unable to encode preview: {exc}") from exc
        return output

    def _temp_root(self) -> Optional[str]:
        if self.temp_dir is None:
            return None
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return str(self.temp_dir)


def image_dimensions(path: Path) -> Optional[tuple[int, int]]:
    """Read the pixel size of a raster, or None when it cannot be decoded."""

    try:
        with Image.open(path) as image:
            return image.size
    except (OSError, UnidentifiedImageError):
        return None
