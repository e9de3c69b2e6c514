"""Configuration utilities for Cloudfiles."""

from .loader import (
    Config,
    MediaSettings,
    ObjectStoreSettings,
    QueueSettings,
    SizeBox,
    load_config,
)

__all__ = [
    "Config",
    "MediaSettings",
    "ObjectStoreSettings",
    "QueueSettings",
    "SizeBox",
    "load_config",
]
