from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from urllib.parse import quote

import anyio
import httpx

from plank.errors import RemoteError, TransportFailure


logger = logging.getLogger("plank.storage")


def _supabase_url() -> str:
    return (os.getenv("SUPABASE_URL") or "").strip().rstrip("/")


def _supabase_service_role_key() -> str:
    return (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


def using_supabase_storage() -> bool:
    return bool(_supabase_url() and _supabase_service_role_key())


def entry_files_bucket() -> str:
    return (os.getenv("SUPABASE_STORAGE_BUCKET_ENTRY_FILES") or "entry_files").strip()


def documents_bucket() -> str:
    return (os.getenv("SUPABASE_STORAGE_BUCKET_DOCUMENTS") or "collection_documents").strip()


def _storage_root() -> Path:
    return Path(os.getenv("PLANK_STORAGE_DIR", "storage"))


def storage_key(data: bytes, path_hint: str) -> str:
    """Content-addressed key that keeps the hint's folder and file name."""
    digest = hashlib.sha256(data).hexdigest()[:16]
    folder, _, filename = path_hint.strip("/").rpartition("/")
    safe_name = (filename or "file").replace("..", "_")
    key = f"{digest}_{safe_name}"
    return f"{folder}/{key}" if folder else key


class SupabaseStorage:
    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
        bucket: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = (url or _supabase_url()).rstrip("/")
        self.service_key = service_key or _supabase_service_role_key()
        self.bucket = bucket or entry_files_bucket()
        self._transport = transport
        self._timeout = timeout

    def _headers(self, content_type: str | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "x-upsert": "true",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _object_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/{self.bucket}/{quote(path, safe='/')}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def put(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        key = storage_key(data, path_hint)
        try:
            async with self._client() as client:
                res = await client.post(self._object_url(key), headers=self._headers(content_type or "application/octet-stream"), content=data)
        except httpx.HTTPError as exc:
            raise TransportFailure(message=f"storage upload failed: {exc}", path=key) from exc
        if res.status_code >= 400:
            logger.warning("storage_upload_failed bucket=%s key=%s status=%s", self.bucket, key, res.status_code)
            raise RemoteError(
                message=f"storage upload failed with status {res.status_code}",
                code="STORAGE_UPLOAD_FAILED",
                path=key,
                detail={"status": res.status_code, "body": res.text[:200]},
            )
        logger.info("storage_uploaded bucket=%s key=%s size=%s", self.bucket, key, len(data))
        return key

    async def public_url(self, path: str) -> str | None:
        if not self.url:
            return None
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{quote(path, safe='/')}"

    async def remove(self, path: str) -> bool:
        try:
            async with self._client() as client:
                res = await client.delete(self._object_url(path), headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("storage_remove_failed key=%s error=%s", path, exc)
            return False
        return res.status_code < 400


class LocalStorage:
    """Disk fallback used when Supabase storage is not configured."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else _storage_root()

    async def put(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        key = storage_key(data, path_hint)
        target = self.root / key

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await anyio.to_thread.run_sync(_write)
        logger.info("storage_written root=%s key=%s size=%s", self.root, key, len(data))
        return key

    async def public_url(self, path: str) -> str | None:
        return None

    async def remove(self, path: str) -> bool:
        target = self.root / path

        def _unlink() -> bool:
            try:
                target.unlink()
            except FileNotFoundError:
                return False
            return True

        removed = await anyio.to_thread.run_sync(_unlink)
        logger.info("storage_removed root=%s key=%s removed=%s", self.root, path, removed)
        return removed


def storage_from_env():
    if using_supabase_storage():
        return SupabaseStorage()
    return LocalStorage()


def document_storage_from_env():
    """Storage for collection documents, kept apart from entry files."""
    if using_supabase_storage():
        return SupabaseStorage(bucket=documents_bucket())
    return LocalStorage(_storage_root() / "documents")
