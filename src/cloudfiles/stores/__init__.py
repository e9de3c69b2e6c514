"""Object store implementations for Cloudfiles."""

from .base import ObjectStore, ObjectStoreError
from .s3 import S3ObjectStore

__all__ = ["ObjectStore", "ObjectStoreError", "S3ObjectStore"]
