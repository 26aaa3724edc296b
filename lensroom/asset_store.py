# lensroom/asset_store.py

import logging
import re
import uuid
from typing import Optional

import requests

from lensroom.GCConnection_hlpr import GCConnection
from lensroom.errors import ValidationError

logger = logging.getLogger("lensroom_infer")

DOWNLOAD_TIMEOUT = 60
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
UPLOAD_CONTENT_TYPES = ("image/png", "image/jpeg", "image/webp")

_CONTENT_TYPE_EXT = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}
_DEFAULTS = {"photo": ("png", "image/png"), "video": ("mp4", "video/mp4")}


def safe_segment(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", str(value))


def blob_path_for(identity: str, generation_id: str, kind: str, ext: str) -> str:
    """{identity}/{kind}/{generation_id}.{ext}; the same inputs always map to the same object."""
    return f"{safe_segment(identity)}/{safe_segment(kind)}/{safe_segment(generation_id)}.{ext}"


def resolve_content_type(header: Optional[str], kind: str) -> tuple[str, str]:
    """(ext, content_type) from a Content-Type header, falling back to the kind's default."""
    content_type = (header or "").split(";")[0].strip().lower()
    ext = _CONTENT_TYPE_EXT.get(content_type)
    if ext is None:
        return _DEFAULTS.get(kind, _DEFAULTS["photo"])
    return ext, content_type


def upload_path_for(identity: str, filename: Optional[str], data: Optional[bytes], content_type: Optional[str]) -> tuple[str, str]:
    """
    Validates an upload and names its object: {identity}/uploads/{uuid}_{name}.
    The name keeps [A-Za-z0-9.-] (everything else becomes "_") and is cut to 100 chars.
    Returns (path, normalized content type).
    """
    if not data:
        raise ValidationError("No file provided")
    content_type = (content_type or "").split(";")[0].strip().lower()
    if content_type not in UPLOAD_CONTENT_TYPES:
        raise ValidationError(f"Invalid file type. Allowed: {', '.join(UPLOAD_CONTENT_TYPES)}")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("File too large. Max size: 10MB", details={"size": len(data), "max": MAX_UPLOAD_BYTES})
    name = re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "upload")[:100]
    return f"{safe_segment(identity)}/uploads/{uuid.uuid4()}_{name}", content_type


class AssetStore:
    """
    Copies provider-issued (short-lived) URLs into the GCS bucket.

    persist() overwrites on repeat, so retrying a generation never fails on
    "already exists".
    """

    def __init__(self, connection: GCConnection, http_session: Optional[requests.Session] = None):
        self.connection = connection
        self.http = http_session or requests.Session()

    def persist(self, identity: str, generation_id: str, source_url: str, kind: str) -> str:
        with self.http.get(source_url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
            resp.raise_for_status()
            ext, content_type = resolve_content_type(resp.headers.get("Content-Type"), kind)
            data = resp.content

        path = blob_path_for(identity, generation_id, kind, ext)
        _, https_url = self.connection.upload_to_gcs(path, data, content_type)
        logger.info("[Storage] Persisted %d bytes -> %s", len(data), path)
        return https_url

    def persist_upload(self, identity: str, filename: Optional[str], data: bytes, content_type: Optional[str]) -> tuple[str, str]:
        """Stores a user-supplied reference image; returns (https_url, path)."""
        path, content_type = upload_path_for(identity, filename, data, content_type)
        _, https_url = self.connection.upload_to_gcs(path, data, content_type)
        logger.info("[Storage] Uploaded %d bytes -> %s", len(data), path)
        return https_url, path


class MockAssetStore:
    """USE_MOCK_INFERENCE: nothing is copied, the source URL is the reference."""

    def persist(self, identity: str, generation_id: str, source_url: str, kind: str) -> str:
        return source_url

    def persist_upload(self, identity: str, filename: Optional[str], data: bytes, content_type: Optional[str]) -> tuple[str, str]:
        path, content_type = upload_path_for(identity, filename, data, content_type)
        return f"mock://{path}", path
