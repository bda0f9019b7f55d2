# Overview: Image object storage (S3-compatible bucket such as Cloudflare R2).

from __future__ import annotations

import os
import re
import secrets
import time

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app


ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

_FOLDER_RE = re.compile(r"^[a-z0-9][a-z0-9_\-/]{0,63}$")


class StorageError(Exception):
    """Raised for upload/list/delete failures."""
    pass


def validate_image(content_type: str | None, size: int, max_bytes: int) -> None:
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise StorageError("Invalid file type. Only JPEG, PNG, WebP, and GIF are allowed.")
    if size <= 0:
        raise StorageError("File is empty")
    if size > max_bytes:
        raise StorageError(f"File size too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")


def validate_folder(folder: str) -> str:
    folder = (folder or "products").strip().strip("/")
    if ".." in folder or not _FOLDER_RE.match(folder):
        raise StorageError("Invalid folder")
    return folder


def generate_key(folder: str, filename: str | None, content_type: str) -> str:
    """<folder>/<epoch ms>-<random>.<ext>; the client's file name is only used for its extension."""
    ext = os.path.splitext(filename or "")[1].lstrip(".").lower()
    if not ext or not ext.isalnum() or len(ext) > 5:
        ext = ALLOWED_CONTENT_TYPES[content_type]
    return f"{folder}/{int(time.time() * 1000)}-{secrets.token_hex(3)}.{ext}"


class S3Storage:
    def __init__(self, *, bucket: str, endpoint_url: str | None, access_key_id: str | None,
                 secret_access_key: str | None, public_url: str | None):
        self.bucket = bucket
        self.public_url = (public_url or "").rstrip("/")
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name="auto",
        )

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return self.signed_url(key)

    def signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not sign URL: {e}")

    def put(self, key: str, data: bytes, content_type: str, original_name: str | None) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"original-name": (original_name or "")[:200]},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload failed: {e}")

    def list(self, folder: str) -> list[dict]:
        # list_objects_v2 returns at most 1000 keys per call
        paginator = self.client.get_paginator("list_objects_v2")
        objects = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{folder}/"):
                for obj in page.get("Contents", []):
                    objects.append({
                        "key": obj["Key"],
                        "url": self.url_for(obj["Key"]),
                        "size": obj.get("Size", 0),
                        "last_modified": obj["LastModified"].isoformat() if obj.get("LastModified") else None,
                    })
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"List failed: {e}")
        return objects

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete failed: {e}")


class PlaceholderStorage:
    """
    Development backend used when no bucket is configured. Nothing is stored;
    uploads get a placeholder image URL so the admin flow still works.
    """

    def url_for(self, key: str) -> str:
        return f"https://via.placeholder.com/800x800.png?text={key.rsplit('/', 1)[-1]}"

    def put(self, key: str, data: bytes, content_type: str, original_name: str | None) -> None:
        current_app.logger.warning("Storage bucket not configured; discarding upload %s", key)

    def list(self, folder: str) -> list[dict]:
        return []

    def delete(self, key: str) -> None:
        current_app.logger.warning("Storage bucket not configured; nothing to delete for %s", key)


def get_storage():
    cfg = current_app.config
    if not cfg.get("STORAGE_BUCKET"):
        return PlaceholderStorage()
    return S3Storage(
        bucket=cfg["STORAGE_BUCKET"],
        endpoint_url=cfg.get("STORAGE_ENDPOINT_URL"),
        access_key_id=cfg.get("STORAGE_ACCESS_KEY_ID"),
        secret_access_key=cfg.get("STORAGE_SECRET_ACCESS_KEY"),
        public_url=cfg.get("STORAGE_PUBLIC_URL"),
    )


def upload(stream, filename: str | None, content_type: str | None, folder: str = "products",
           *, storage=None) -> dict:
    """
    Validate and store one image. Returns {"key", "url", "size", "content_type"}.
    """
    folder = validate_folder(folder)
    max_bytes = current_app.config["MAX_UPLOAD_BYTES"]

    # Read one byte past the limit so oversized files are detected without buffering them whole
    data = stream.read(max_bytes + 1)
    validate_image(content_type, len(data), max_bytes)

    key = generate_key(folder, filename, content_type)
    storage = storage or get_storage()
    storage.put(key, data, content_type, filename)

    return {"key": key, "url": storage.url_for(key), "size": len(data), "content_type": content_type}


def list_objects(folder: str = "products", *, storage=None) -> list[dict]:
    return (storage or get_storage()).list(validate_folder(folder))


def delete_object(key: str, *, storage=None) -> None:
    if not key or ".." in key or key.startswith("/"):
        raise StorageError("Invalid key")
    (storage or get_storage()).delete(key)
