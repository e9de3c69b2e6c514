"""MIME type and file-extension classification for media items."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Optional

IMAGE = "image"
DOCUMENT = "document"
OTHER = "other"

WORD = "word"
SPREADSHEET = "spreadsheet"
PRESENTATION = "presentation"
PDF = "pdf"


@dataclass(frozen=True, slots=True)
class DocumentFormat:
    """How a document reaches the paged-document stage."""

    kind: str
    extension: str


_DOCUMENT_FORMATS: Dict[str, DocumentFormat] = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat(WORD, "docx"),
    "application/msword": DocumentFormat(WORD, "doc"),
    "application/vnd.oasis.opendocument.text": DocumentFormat(WORD, "odt"),
    "application/rtf": DocumentFormat(WORD, "rtf"),
    "text/rtf": DocumentFormat(WORD, "rtf"),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": DocumentFormat(SPREADSHEET, "xlsx"),
    "application/vnd.ms-excel": DocumentFormat(SPREADSHEET, "xls"),
    "application/vnd.oasis.opendocument.spreadsheet": DocumentFormat(SPREADSHEET, "ods"),
    "text/csv": DocumentFormat(SPREADSHEET, "csv"),
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": DocumentFormat(PRESENTATION, "pptx"),
    "application/vnd.ms-powerpoint": DocumentFormat(PRESENTATION, "ppt"),
    "application/vnd.oasis.opendocument.presentation": DocumentFormat(PRESENTATION, "odp"),
    "application/pdf": DocumentFormat(PDF, "pdf"),
}

_EXTENSION_FORMATS: Dict[str, DocumentFormat] = {}
for _format in _DOCUMENT_FORMATS.values():
    _EXTENSION_FORMATS.setdefault(_format.extension, _format)

DOCUMENT_MIME_TYPES = frozenset(_DOCUMENT_FORMATS)


def normalize_mime(content_type: Optional[str]) -> str:
    """Strip parameters and case from a MIME type."""

    if not content_type:
        return ""
    return content_type.split(";")[0].strip().lower()


def classify(mime_type: Optional[str]) -> str:
    """Classify a declared MIME type into image, document or other."""

    mime = normalize_mime(mime_type)
    if mime in _DOCUMENT_FORMATS:
        return DOCUMENT
    if mime.startswith("image/"):
        return IMAGE
    return OTHER


def is_document(mime_type: Optional[str]) -> bool:
    return classify(mime_type) == DOCUMENT


def is_image(mime_type: Optional[str]) -> bool:
    return classify(mime_type) == IMAGE


def document_format(mime_type: Optional[str], file_path: str | None = None) -> Optional[DocumentFormat]:
    """Resolve a document format from the MIME type, falling back to the file extension."""

    mime = normalize_mime(mime_type)
    found = _DOCUMENT_FORMATS.get(mime)
    if found is not None:
        return found
    if not file_path:
        return None
    extension = PurePosixPath(file_path).suffix.lstrip(".").lower()
    return _EXTENSION_FORMATS.get(extension)
