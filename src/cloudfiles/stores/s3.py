"""S3-compatible object store client."""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from cloudfiles.config import ObjectStoreSettings
from cloudfiles.stores.base import (
    ObjectStore,
    ObjectStoreError,
    clamp_presign_minutes,
    join_public_url,
)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {"500", "502", "503", "504", "SlowDown", "RequestTimeout", "InternalError"}
_CHUNK_SIZE = 1024 * 1024


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ClientError):
        return _error_code(exc) in _TRANSIENT_CODES
    return isinstance(exc, BotoCoreError)


@dataclass(slots=True)
class S3ObjectStore(ObjectStore):
    """Synchronous client over one bucket and optional key prefix."""

    client: Any
    bucket: str
    public_base: str
    root: str = ""
    acl: Optional[str] = "public-read"
    retry_attempts: int = 1
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    @classmethod
    def from_settings(
        cls, settings: ObjectStoreSettings, *, logger: Optional[logging.Logger] = None
    ) -> "S3ObjectStore":
        """Build a client from configuration; credentials come from the environment."""

        if not settings.bucket:
            raise ValueError("object_store.bucket must be configured.")
        key, secret = settings.credentials()
        session = boto3.session.Session(
            aws_access_key_id=key,
            aws_secret_access_key=secret,
            region_name=settings.region,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.endpoint,
            config=BotoConfig(
                connect_timeout=settings.timeout_seconds,
                read_timeout=settings.timeout_seconds,
                retries={"total_max_attempts": 1},
                s3={"addressing_style": "path" if settings.path_style else "auto"},
                signature_version="s3v4",
            ),
        )
        return cls(
            client=client,
            bucket=settings.bucket,
            public_base=settings.public_url,
            root=settings.root,
            acl=None if settings.bucket_owner_enforced else "public-read",
            retry_attempts=settings.retry_attempts,
            logger=logger or logging.getLogger(__name__),
        )

    def key_for(self, path: str) -> str:
        """Return the bucket key for a relative artifact path."""

        relative = path.lstrip("/")
        return f"{self.root}/{relative}" if self.root else relative

    def public_url(self, path: str) -> str:
        return join_public_url(self.public_base, self.root, path)

    def exists(self, path: str) -> bool:
        try:
            return self.check(path)
        except ObjectStoreError as exc:
            self.logger.debug("Existence check for %s failed; treating as absent: %s", path, exc)
            return False

    def check(self, path: str) -> bool:
        try:
            for attempt in self._retrying():
                with attempt:
                    self.client.head_object(Bucket=self.bucket, Key=self.key_for(path))
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise ObjectStoreError(f"Unable to check {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Unable to check {path}: {exc}") from exc
        return True

    def upload(self, local_path: Path, remote_path: str) -> bool:
        local_path = Path(local_path)
        if not local_path.is_file() or not os.access(local_path, os.R_OK):
            self.logger.debug("Upload skipped; %s is not a readable file.", local_path)
            return False

        params: dict[str, Any] = {"Bucket": self.bucket, "Key": self.key_for(remote_path)}
        content_type, _ = mimetypes.guess_type(local_path.name)
        if content_type:
            params["ContentType"] = content_type
        if self.acl:
            params["ACL"] = self.acl

        try:
            with local_path.open("rb") as handle:
                for attempt in self._retrying():
                    with attempt:
                        handle.seek(0)
                        self.client.put_object(Body=handle, **params)
        except (BotoCoreError, ClientError, OSError) as exc:
            self.logger.warning("Upload of %s to %s failed: %s", local_path, remote_path, exc)
            return False

        self.logger.debug("Uploaded %s to %s", local_path, remote_path)
        return True

    def download(self, remote_path: str, local_path: Path) -> bool:
        local_path = Path(local_path)
        partial = local_path.with_name(local_path.name + ".part")
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            for attempt in self._retrying():
                with attempt:
                    response = self.client.get_object(
                        Bucket=self.bucket, Key=self.key_for(remote_path)
                    )
                    body = response["Body"]
                    try:
                        with partial.open("wb") as handle:
                            for chunk in body.iter_chunks(_CHUNK_SIZE):
                                handle.write(chunk)
                    finally:
                        body.close()
            os.replace(partial, local_path)
        except (BotoCoreError, ClientError, OSError) as exc:
            self.logger.warning("Download of %s to %s failed: %s", remote_path, local_path, exc)
            partial.unlink(missing_ok=True)
            return False

        self.logger.debug("Downloaded %s to %s", remote_path, local_path)
        return True

    def delete(self, remote_path: str) -> bool:
        try:
            for attempt in self._retrying():
                with attempt:
                    self.client.delete_object(Bucket=self.bucket, Key=self.key_for(remote_path))
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return True
            self.logger.warning("Delete of %s failed: %s", remote_path, exc)
            return False
        except BotoCoreError as exc:
            self.logger.warning("Delete of %s failed: %s", remote_path, exc)
            return False
        return True

    def presigned_upload_url(self, path: str, content_type: str, ttl_minutes: int = 60) -> str:
        minutes = clamp_presign_minutes(ttl_minutes)
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self.key_for(path),
            "ContentType": content_type,
        }
        if self.acl:
            params["ACL"] = self.acl
        return self.client.generate_presigned_url(
            "put_object",
            Params=params,
            ExpiresIn=minutes * 60,
            HttpMethod="PUT",
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential_jitter(initial=0.5, max=10.0),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
