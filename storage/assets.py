from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import timedelta
import hashlib
import logging
import mimetypes
import os
from pathlib import Path, PurePosixPath

from google.cloud import storage as gcs

logger = logging.getLogger(__name__)

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    base_dir: Path
    public_prefix: str
    gcs_bucket: str | None
    signed_url_ttl_min: int


def load_storage_config() -> StorageConfig:
    return StorageConfig(
        backend=os.getenv("STORAGE_BACKEND", "local").strip().lower(),
        base_dir=Path(os.getenv("ARTIFACTS_BASE_DIR", "out/generated")),
        public_prefix=os.getenv("ARTIFACTS_PUBLIC_PREFIX", "/generated").rstrip("/"),
        gcs_bucket=os.getenv("GCS_BUCKET") or None,
        signed_url_ttl_min=int(os.getenv("GCS_SIGNED_URL_TTL_MIN", "60")),
    )


@dataclass(frozen=True)
class StoredAsset:
    url: str
    storage_path: str
    content_type: str
    size_bytes: int


def extension_for(content_type: str) -> str:
    return _MIME_EXTENSIONS.get(content_type.lower(), content_type.split("/")[-1] or "bin")


def decode_data_url(url: str) -> tuple[bytes, str] | None:
    """Return ``(payload, mime_type)`` for ``data:<mime>;base64,<payload>`` URLs."""
    if not url.startswith("data:"):
        return None
    header, sep, payload = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    mime_type = header[: -len(";base64")] or "application/octet-stream"
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError):
        return None


def build_storage_key(generation_id: str, index: int, data: bytes, content_type: str) -> str:
    digest = hashlib.sha256(data).hexdigest()[:16]
    return f"generations/{generation_id}/{index}-{digest}.{extension_for(content_type)}"


def parse_gcs_uri(uri: str) -> tuple[str, str] | None:
    """Split ``gs://bucket/name`` into ``(bucket, name)``."""
    if not uri.startswith("gs://"):
        return None
    bucket, sep, name = uri[5:].partition("/")
    if not bucket or not sep or not name:
        return None
    return bucket, name


def _guess_content_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


def _require_gcs_uri(uri: str) -> tuple[str, str]:
    parsed = parse_gcs_uri(uri)
    if parsed is None:
        raise ValueError(f"invalid GCS URI: {uri}")
    return parsed


class LocalAssetStorage:
    def __init__(self, config: StorageConfig, client=None) -> None:
        self.base_dir = config.base_dir
        self.public_prefix = config.public_prefix
        self._client = client

    @property
    def client(self):
        # only needed when the provider hands back gs:// outputs
        if self._client is None:
            self._client = gcs.Client()
        return self._client

    def save(self, data: bytes, *, generation_id: str, content_type: str, index: int = 0) -> StoredAsset:
        key = build_storage_key(generation_id, index, data, content_type)
        path = self.base_dir / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return StoredAsset(
            url=f"{self.public_prefix}/{key}",
            storage_path=key,
            content_type=content_type,
            size_bytes=len(data),
        )

    def import_gcs_object(self, uri: str, *, generation_id: str, index: int = 0) -> StoredAsset:
        bucket_name, name = _require_gcs_uri(uri)
        data = self.client.bucket(bucket_name).blob(name).download_as_bytes()
        return self.save(
            data,
            generation_id=generation_id,
            content_type=_guess_content_type(name),
            index=index,
        )

    def resolve_local_path(self, storage_path: str) -> Path | None:
        root = self.base_dir.resolve()
        candidate = (root / storage_path).resolve()
        if not candidate.is_relative_to(root):
            return None
        return candidate

    def signed_url(self, storage_path: str) -> str:
        return f"{self.public_prefix}/{storage_path}"


class GCSAssetStorage:
    """Private bucket backend.

    Stored URLs point at the app's ``/generated`` route, which redirects to a
    short-lived signed URL on every read.
    """

    def __init__(self, config: StorageConfig, client=None) -> None:
        if not config.gcs_bucket:
            raise RuntimeError("GCS_BUCKET is required when STORAGE_BACKEND=gcs")
        self.bucket_name = config.gcs_bucket
        self.public_prefix = config.public_prefix
        self.ttl_min = config.signed_url_ttl_min
        self.client = client or gcs.Client()
        self.bucket = self.client.bucket(self.bucket_name)

    def save(self, data: bytes, *, generation_id: str, content_type: str, index: int = 0) -> StoredAsset:
        key = build_storage_key(generation_id, index, data, content_type)
        blob = self.bucket.blob(key)
        blob.upload_from_string(data, content_type=content_type)
        return StoredAsset(
            url=f"{self.public_prefix}/{key}",
            storage_path=key,
            content_type=content_type,
            size_bytes=len(data),
        )

    def import_gcs_object(self, uri: str, *, generation_id: str, index: int = 0) -> StoredAsset:
        bucket_name, name = _require_gcs_uri(uri)
        source_bucket = self.client.bucket(bucket_name)
        source = source_bucket.get_blob(name)
        if source is None:
            raise FileNotFoundError(uri)
        if bucket_name == self.bucket_name:
            key = name
        else:
            key = f"generations/{generation_id}/{index}-{PurePosixPath(name).name}"
            source_bucket.copy_blob(source, self.bucket, key)
        return StoredAsset(
            url=f"{self.public_prefix}/{key}",
            storage_path=key,
            content_type=source.content_type or _guess_content_type(name),
            size_bytes=source.size or 0,
        )

    def resolve_local_path(self, storage_path: str) -> Path | None:
        return None

    def signed_url(self, storage_path: str) -> str:
        blob = self.bucket.blob(storage_path)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=self.ttl_min),
            method="GET",
        )


AssetStorage = LocalAssetStorage | GCSAssetStorage

_STORAGE: AssetStorage | None = None


def get_asset_storage() -> AssetStorage:
    global _STORAGE
    if _STORAGE is None:
        config = load_storage_config()
        if config.backend == "gcs":
            _STORAGE = GCSAssetStorage(config)
        else:
            _STORAGE = LocalAssetStorage(config)
        logger.info("Asset storage initialised", extra={"backend": config.backend})
    return _STORAGE
