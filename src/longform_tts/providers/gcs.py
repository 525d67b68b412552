from __future__ import annotations

import asyncio
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlparse, urlunparse

from longform_tts.errors import DownloadError, ValidationError
from longform_tts.providers.interfaces import StoredObject
from longform_tts.utils.log import logger

_DOWNLOAD_BLOCK_BYTES = 1024 * 1024


def _is_permission_error(ex: BaseException) -> bool:
    if type(ex).__name__ in {"Forbidden", "PermissionDenied", "Unauthorized"}:
        return True
    return getattr(ex, "code", None) in (401, 403)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
    parsed = urlparse(raw_endpoint)
    if not parsed.scheme or not parsed.netloc:
        return raw_endpoint.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")


def _iso(ts: datetime | None) -> str:
    return ts.isoformat() if ts is not None else ""


class GcsStorage:
    """
    Google Cloud Storage adapter (blocking SDK calls run in a worker thread).
    """

    def __init__(
        self,
        *,
        project_id: str | None = None,
        credentials_path: str | None = None,
        emulator_host: str | None = None,
        bucket_location: str = "US",
        client: Any = None,
    ) -> None:
        self.project_id = project_id
        self.credentials_path = credentials_path
        self.emulator_host = emulator_host
        self.bucket_location = str(bucket_location or "US")
        self._client = client
        self._ready_buckets: set[str] = set()

    @property
    def client(self) -> Any:
        if self._client is None:
            from google.cloud import storage  # type: ignore

            if self.emulator_host:
                from google.auth.credentials import AnonymousCredentials  # type: ignore

                endpoint = _normalize_emulator_endpoint(self.emulator_host)
                os.environ["STORAGE_EMULATOR_HOST"] = endpoint
                self._client = storage.Client(
                    project=self.project_id or "local-dev",
                    credentials=AnonymousCredentials(),
                    client_options={"api_endpoint": endpoint},
                )
            elif self.credentials_path:
                self._client = storage.Client.from_service_account_json(
                    self.credentials_path, project=self.project_id
                )
            else:
                self._client = storage.Client(project=self.project_id)
        return self._client

    def uri_for(self, bucket: str, name: str) -> str:
        return f"gs://{bucket}/{name}"

    async def ensure_bucket(self, bucket: str) -> None:
        """
        Make sure the output bucket exists, creating it when missing.

        Permission errors on the check or the create are tolerated: the bucket
        is assumed to exist and a real problem surfaces on first use.
        """
        if bucket in self._ready_buckets:
            return

        def _ensure() -> None:
            handle = self.client.bucket(bucket)
            try:
                if handle.exists():
                    return
            except Exception as ex:
                if not _is_permission_error(ex):
                    raise
                logger.warning("bucket_check_forbidden", bucket=bucket, error=str(ex))
                return
            try:
                self.client.create_bucket(handle, location=self.bucket_location)
                logger.info("bucket_created", bucket=bucket, location=self.bucket_location)
            except Exception as ex:
                if not _is_permission_error(ex):
                    raise
                logger.warning("bucket_create_forbidden", bucket=bucket, error=str(ex))

        try:
            await asyncio.to_thread(_ensure)
        except Exception as ex:
            raise ValidationError(
                f"Output bucket {bucket!r} is unavailable: {ex}. The service account needs "
                "Storage Object Admin on the bucket (or Storage Admin to create it)."
            ) from ex
        self._ready_buckets.add(bucket)

    async def exists(self, bucket: str, name: str) -> bool:
        blob = self.client.bucket(bucket).blob(name)
        return bool(await asyncio.to_thread(blob.exists))

    async def list(self, bucket: str, prefix: str) -> list[StoredObject]:
        def _list() -> list[StoredObject]:
            out = []
            for blob in self.client.list_blobs(bucket, prefix=prefix or None):
                out.append(
                    StoredObject(
                        name=str(blob.name),
                        size=int(blob.size or 0),
                        created_at=_iso(blob.time_created),
                        bucket=bucket,
                        extra={"updated": _iso(blob.updated), "content_type": blob.content_type},
                    )
                )
            return out

        return await asyncio.to_thread(_list)

    async def delete(self, bucket: str, name: str) -> None:
        blob = self.client.bucket(bucket).blob(name)
        await asyncio.to_thread(blob.delete)

    async def download_streaming(
        self,
        bucket: str,
        name: str,
        local_path: Path,
        on_bytes: Callable[[int, int], None] | None = None,
    ) -> int:
        """
        Stream an object to `local_path` in blocks, reporting (received, total).

        A partial file is removed on failure.
        """
        loop = asyncio.get_running_loop()
        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)

        def _report(received: int, total: int) -> None:
            if on_bytes is not None:
                loop.call_soon_threadsafe(on_bytes, received, total)

        def _download() -> int:
            blob = self.client.bucket(bucket).get_blob(name)
            if blob is None:
                raise DownloadError(f"object not found: gs://{bucket}/{name}")
            total = int(blob.size or 0)
            received = 0
            with blob.open("rb", chunk_size=_DOWNLOAD_BLOCK_BYTES) as src, dest.open("wb") as fh:
                while True:
                    block = src.read(_DOWNLOAD_BLOCK_BYTES)
                    if not block:
                        break
                    fh.write(block)
                    received += len(block)
                    _report(received, total)
            return received

        try:
            return await asyncio.to_thread(_download)
        except DownloadError:
            dest.unlink(missing_ok=True)
            raise
        except Exception as ex:
            dest.unlink(missing_ok=True)
            raise DownloadError(f"download of gs://{bucket}/{name} failed: {ex}") from ex
