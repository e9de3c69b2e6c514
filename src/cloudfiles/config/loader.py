"""Configuration loading for Cloudfiles."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

KEY_ENV = "CLOUDFILES_S3_KEY"
SECRET_ENV = "CLOUDFILES_S3_SECRET"

MODERN_FORMATS = {"webp": "image/webp", "avif": "image/avif"}


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    path: Path | None = None
    level: str = Field(default="info")

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        if not isinstance(value, str):
            raise TypeError("Logging level must be a string.")
        normalized = value.strip().lower()
        if normalized not in {"debug", "info", "warn", "warning", "error", "critical"}:
            raise ValueError(f"Unsupported logging level: {value!r}")
        return normalized


class StorageSettings(BaseModel):
    """Location of the SQLite state database."""

    model_config = ConfigDict(extra="forbid")

    path: Path | None = None


class UploadSettings(BaseModel):
    """Local directories holding artifacts before they are evicted."""

    model_config = ConfigDict(extra="forbid")

    base_path: Path = Path("uploads")
    base_url: str = ""
    temp_path: Path | None = None


class ObjectStoreSettings(BaseModel):
    """Remote bucket addressing and client behaviour."""

    model_config = ConfigDict(extra="forbid")

    bucket: str = ""
    endpoint: str | None = None
    region: str = "us-east-1"
    root: str = ""
    public_url: str = ""
    path_style: bool = True
    bucket_owner_enforced: bool = False
    timeout_seconds: float = Field(default=120.0, gt=0.0)
    retry_attempts: int = Field(default=1, ge=1)
    presign_minutes: int = Field(default=60, ge=5, le=1440)

    @field_validator("root", mode="before")
    @classmethod
    def _strip_root(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise TypeError("object_store.root must be a string.")
        return value.strip().strip("/")

    def credentials(self) -> tuple[str | None, str | None]:
        """Return the access key pair from the environment."""

        return os.environ.get(KEY_ENV), os.environ.get(SECRET_ENV)


class SizeBox(BaseModel):
    """A registered output size; zero means unconstrained in that dimension."""

    model_config = ConfigDict(extra="forbid")

    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    crop: bool = False


class MediaSettings(BaseModel):
    """Derived artifact policy."""

    model_config = ConfigDict(extra="forbid")

    thumbnail: SizeBox = Field(default_factory=lambda: SizeBox(width=150, height=150, crop=True))
    medium: SizeBox = Field(default_factory=lambda: SizeBox(width=300, height=300))
    medium_large: SizeBox = Field(default_factory=lambda: SizeBox(width=768, height=0))
    large: SizeBox = Field(default_factory=lambda: SizeBox(width=1024, height=1024))
    additional_sizes: dict[str, SizeBox] = Field(default_factory=dict)
    document_full_size: SizeBox = Field(
        default_factory=lambda: SizeBox(width=1500, height=1500)
    )
    big_image_threshold: int = Field(default=2560, ge=0)
    output_format: str | None = None
    modern_formats: list[str] = Field(default_factory=lambda: ["webp", "avif"])
    jpeg_quality: int = Field(default=80, ge=1, le=100)
    image_quality: int = Field(default=82, ge=1, le=100)
    render_dpi: int = Field(default=300, ge=72)
    office_converter: str = "soffice"
    office_timeout_seconds: float = Field(default=120.0, gt=0.0)

    @field_validator("modern_formats", mode="before")
    @classmethod
    def _normalize_formats(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise TypeError("media.modern_formats must be a list.")
        cleaned: list[str] = []
        for item in value:
            name = str(item).strip().lower()
            if name not in MODERN_FORMATS:
                raise ValueError(f"Unsupported modern format: {item!r}")
            if name not in cleaned:
                cleaned.append(name)
        return cleaned

    @field_validator("output_format", mode="before")
    @classmethod
    def _normalize_output_format(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip().lower()
        return text or None

    def registered_sizes(self) -> dict[str, SizeBox]:
        """Return every image size that the derived-size generator must produce."""

        sizes = {
            "thumbnail": self.thumbnail,
            "medium": self.medium,
            "medium_large": self.medium_large,
            "large": self.large,
        }
        sizes.update(self.additional_sizes)
        return sizes

    def document_sizes(self) -> dict[str, SizeBox]:
        """Return preview sizes rendered for paged documents, `full` first."""

        return {
            "full": self.document_full_size,
            "thumbnail": self.thumbnail,
            "medium": self.medium,
            "large": self.large,
        }


class QueueSettings(BaseModel):
    """Background thumbnail queue timing."""

    model_config = ConfigDict(extra="forbid")

    lock_seconds: float = Field(default=300.0, gt=0.0)
    reschedule_seconds: float = Field(default=30.0, ge=0.0)
    initial_delay_seconds: float = Field(default=60.0, ge=0.0)
    poll_seconds: float = Field(default=5.0, gt=0.0)


class ConfigModel(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    uploads: UploadSettings = Field(default_factory=UploadSettings)
    object_store: ObjectStoreSettings = Field(default_factory=ObjectStoreSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)

    @model_validator(mode="after")
    def _validate_sizes(self) -> ConfigModel:
        reserved = {"thumbnail", "medium", "medium_large", "large", "full"}
        clashing = reserved.intersection(self.media.additional_sizes)
        if clashing:
            raise ValueError(
                f"additional_sizes may not redefine built-in sizes: {sorted(clashing)}"
            )
        return self


@dataclass(slots=True)
class Config:
    """Validated configuration with convenience helpers."""

    model: ConfigModel
    raw: Mapping[str, Any] = field(repr=False)
    loaded_from: tuple[str, ...] = field(default_factory=tuple, repr=False)

    @property
    def logging(self) -> LoggingSettings:
        """Return logging settings."""

        return self.model.logging

    @property
    def storage(self) -> StorageSettings:
        """Return storage configuration."""

        return self.model.storage

    @property
    def uploads(self) -> UploadSettings:
        return self.model.uploads

    @property
    def object_store(self) -> ObjectStoreSettings:
        return self.model.object_store

    @property
    def media(self) -> MediaSettings:
        return self.model.media

    @property
    def queue(self) -> QueueSettings:
        return self.model.queue

    def base_dir(self) -> Path:
        """Return the absolute local artifact base directory."""

        base = self.uploads.base_path
        return base if base.is_absolute() else Path.cwd() / base

    def model_dump(self) -> Mapping[str, Any]:
        """Expose the parsed configuration as a mapping."""

        return self.model.model_dump()


def load_config(path: Path | None = None) -> Config:
    """Load configuration from defaults/local overrides, or from an explicit config document."""

    merged: dict[str, Any] = {}
    loaded_from: list[str] = []

    if path is not None:
        override_path = _resolve_path(path)
        if override_path is None or not override_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        merged = _merge_dicts(merged, _read_yaml(override_path))
        loaded_from.append(str(override_path))
    else:
        default_candidate = _resolve_path(DEFAULT_CONFIG_PATH)
        packaged_default = _resolve_packaged_path(DEFAULT_CONFIG_PATH)
        if default_candidate and default_candidate.exists():
            merged = _merge_dicts(merged, _read_yaml(default_candidate))
            loaded_from.append(str(default_candidate))
        elif packaged_default and packaged_default.exists():
            merged = _merge_dicts(merged, _read_yaml(packaged_default))
            loaded_from.append(str(packaged_default))
        else:
            packaged_payload = _read_packaged_yaml("cloudfiles.config", "default.yaml")
            if packaged_payload is not None:
                merged = _merge_dicts(merged, packaged_payload)
                loaded_from.append("cloudfiles.config:default.yaml")

        local_candidate = _resolve_path(LOCAL_CONFIG_PATH)
        if local_candidate and local_candidate.exists():
            merged = _merge_dicts(merged, _read_yaml(local_candidate))
            loaded_from.append(str(local_candidate))

    if not merged:
        raise FileNotFoundError("No configuration data could be loaded.")

    try:
        model = ConfigModel.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    return Config(model=model, raw=merged, loaded_from=tuple(loaded_from))


def _resolve_path(path: Path) -> Path | None:
    """Resolve configuration paths relative to the current working directory."""

    if path is None:
        return None
    return path if path.is_absolute() else Path.cwd() / path


def _resolve_packaged_path(path: Path) -> Path | None:
    """Resolve paths embedded in packaged binaries (e.g., PyInstaller)."""

    base = getattr(sys, "_MEIPASS", None)
    if not base:
        return None
    return Path(base) / path


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML file into a dictionary."""

    content = path.read_text(encoding="utf-8")
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must define a mapping at the top level.")
    return data


def _read_packaged_yaml(package: str, name: str) -> dict[str, Any] | None:
    """Read YAML embedded in a Python package via importlib.resources."""

    try:
        content = resources.files(package).joinpath(name).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Packaged configuration {package}:{name} must define a mapping at the top level."
        )
    return data


def _merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge two dictionaries, with override values taking precedence."""

    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = value
    return result
