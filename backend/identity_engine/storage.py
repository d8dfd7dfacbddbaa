"""Thumbnail storage abstraction and Cloudflare R2 implementation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

THUMBNAIL_CONTENT_TYPE = "image/jpeg"


class MediaStoreError(RuntimeError):
    """Base exception for thumbnail storage failures."""


class MediaStoreConfigError(MediaStoreError):
    """Raised when thumbnail storage configuration is missing or invalid."""


class ThumbnailStore(Protocol):
    """Storage interface used for identity face thumbnails."""

    def upload_identity_thumbnail(self, identity_id: str, image_bytes: bytes) -> str:
        """Upload one face crop and return an opaque reference to it."""

    def delete_object(self, object_key: str) -> None:
        """Delete an object key."""


def _normalize_identity_token(identity_id: str) -> str:
    """Reduce an identity id to characters safe inside an object key."""
    token = re.sub(r"[^A-Za-z0-9_-]", "", identity_id.strip())
    if not token:
        raise MediaStoreError(f"Identity id '{identity_id}' cannot be used in an object key")
    return token


def build_thumbnail_key(identity_id: str) -> str:
    """Build the deterministic key for an identity thumbnail object."""
    return f"identities/{_normalize_identity_token(identity_id)}/thumbnail.jpg"


def build_r2_endpoint(account_id: str) -> str:
    """Build the Cloudflare R2 S3-compatible endpoint URL."""
    return f"https://{account_id}.r2.cloudflarestorage.com"


@dataclass(slots=True)
class R2ThumbnailStore:
    """Cloudflare R2 implementation of the ThumbnailStore interface."""

    account_id: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    s3_client: Any | None = None

    def __post_init__(self) -> None:
        missing = []
        if not self.account_id:
            missing.append("R2_ACCOUNT_ID")
        if not self.bucket:
            missing.append("R2_BUCKET")
        if not self.access_key_id:
            missing.append("R2_ACCESS_KEY_ID")
        if not self.secret_access_key:
            missing.append("R2_SECRET_ACCESS_KEY")
        if missing:
            fields = ", ".join(missing)
            raise MediaStoreConfigError(f"Missing required R2 configuration: {fields}")

        if self.s3_client is None:
            self.s3_client = self._build_client()

    def _build_client(self) -> Any:
        import boto3

        return boto3.client(
            "s3",
            region_name="auto",
            endpoint_url=build_r2_endpoint(self.account_id),
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def upload_identity_thumbnail(self, identity_id: str, image_bytes: bytes) -> str:
        if not image_bytes:
            raise MediaStoreError(f"Empty thumbnail payload for identity '{identity_id}'")
        object_key = build_thumbnail_key(identity_id)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=image_bytes,
                ContentType=THUMBNAIL_CONTENT_TYPE,
            )
        except Exception as exc:
            raise MediaStoreError(f"Failed to upload object '{object_key}'") from exc
        return object_key

    def delete_object(self, object_key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=object_key)
        except Exception as exc:
            raise MediaStoreError(f"Failed to delete object '{object_key}'") from exc
