"""Artifact resolution and generation."""

from .artifacts import (
    ArtifactEntry,
    ArtifactSetResolver,
    CompletenessPolicy,
    MetadataError,
    primary_path,
)
from .images import DerivedImages, DocumentPreviewer, ImageSizeGenerator, supported_modern_formats
from .renderer import Renderer

__all__ = [
    "ArtifactEntry",
    "ArtifactSetResolver",
    "CompletenessPolicy",
    "DerivedImages",
    "DocumentPreviewer",
    "ImageSizeGenerator",
    "MetadataError",
    "Renderer",
    "primary_path",
    "supported_modern_formats",
]
