"""Object storage behind one upload/download/delete interface.

Two backends exist: a local filesystem served through the signed
``/api/files`` endpoint, and a remote S3-compatible store using native
presigned URLs. The choice is made once, when the adapter is built.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Protocol

import anyio
import boto3
from botocore.config import Config

from kan_api.config import Settings
from kan_api.observability import increment, log_event, timed
from kan_api.signing import SignatureCodec, UrlSigner

FILES_PREFIX = "/api/files"
FILES_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, PUT, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


class StorageKeyError(ValueError):
    pass


@dataclass(frozen=True)
class ObjectKey:
    bucket: str
    key: str

    @classmethod
    def from_path(cls, path: str) -> ObjectKey | None:
        # Trailing slashes are rejected rather than folded onto the key.
        if path.endswith("/"):
            return None
        bucket, _, key = path.lstrip("/").partition("/")
        if not bucket or not key:
            return None
        return cls(bucket=bucket, key=key)

    @property
    def files_path(self) -> str:
        return files_path(self.bucket, self.key)


def files_path(bucket: str, key: str) -> str:
    return f"{FILES_PREFIX}/{bucket}/{key}"


class StorageBackend(Protocol):
    name: str

    def generate_upload_url(self, bucket: str, key: str, content_type: str, ttl_s: int) -> str: ...

    def generate_download_url(self, bucket: str, key: str, ttl_s: int) -> str: ...

    def delete_object(self, bucket: str, key: str) -> None: ...


class LocalFilesystemBackend:
    name = "local"

    def __init__(self, root: Path, signer: UrlSigner) -> None:
        self.root = Path(root)
        self.signer = signer

    def resolve_path(self, bucket: str, key: str) -> Path:
        if not bucket or not key or "\x00" in bucket or "\x00" in key:
            raise StorageKeyError("Bucket and key are required")
        if bucket in {".", ".."} or "/" in bucket or "\\" in bucket:
            raise StorageKeyError(f"Invalid bucket: {bucket!r}")
        # Keys may not leave their bucket, let alone the storage root.
        bucket_dir = self.root.resolve() / bucket
        target = (bucket_dir / key).resolve()
        if bucket_dir not in target.parents:
            raise StorageKeyError(f"Key escapes storage root: {key!r}")
        return target

    def generate_upload_url(self, bucket: str, key: str, content_type: str, ttl_s: int) -> str:
        self.resolve_path(bucket, key)
        return self.signer.build_signed_url(files_path(bucket, key), "PUT", ttl_s).url

    def generate_download_url(self, bucket: str, key: str, ttl_s: int) -> str:
        self.resolve_path(bucket, key)
        return self.signer.build_signed_url(files_path(bucket, key), "GET", ttl_s).url

    def delete_object(self, bucket: str, key: str) -> None:
        target = self.resolve_path(bucket, key)
        try:
            target.unlink()
        except OSError as exc:
            log_event(
                "storage.delete_failed",
                level=logging.WARNING,
                backend=self.name,
                path=str(target),
                error=repr(exc),
            )

    def open_path(self, bucket: str, key: str) -> Path | None:
        target = self.resolve_path(bucket, key)
        return target if target.is_file() else None

    def _open_for_write(self, bucket: str, key: str) -> BinaryIO:
        target = self.resolve_path(bucket, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target.open("wb")

    # Both writers stream in place; an interrupted upload leaves a truncated file.
    def write_chunks(self, bucket: str, key: str, chunks: Iterable[bytes]) -> int:
        written = 0
        with self._open_for_write(bucket, key) as fh:
            for chunk in chunks:
                fh.write(chunk)
                written += len(chunk)
        return written

    async def write_stream(self, bucket: str, key: str, chunks: AsyncIterable[bytes]) -> int:
        # Disk calls run on worker threads, off the event loop.
        fh = await anyio.to_thread.run_sync(self._open_for_write, bucket, key)
        written = 0
        try:
            async for chunk in chunks:
                if chunk:
                    await anyio.to_thread.run_sync(fh.write, chunk)
                    written += len(chunk)
        finally:
            await anyio.to_thread.run_sync(fh.close)
        return written


class RemoteObjectBackend:
    name = "s3"

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> RemoteObjectBackend:
        session = boto3.session.Session(region_name=settings.s3_region or None)
        client = session.client(
            "s3",
            endpoint_url=settings.s3_endpoint or None,
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if settings.s3_force_path_style else "auto"},
            ),
        )
        return cls(client)

    def generate_upload_url(self, bucket: str, key: str, content_type: str, ttl_s: int) -> str:
        return self.client.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=ttl_s,
        )

    def generate_download_url(self, bucket: str, key: str, ttl_s: int) -> str:
        return self.client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=ttl_s,
        )

    def delete_object(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)


def remote_configured(settings: Settings) -> bool:
    return bool(settings.s3_access_key_id and settings.s3_secret_access_key)


def select_backend(settings: Settings, signer: UrlSigner, client: Any = None) -> StorageBackend:
    if remote_configured(settings):
        if client is not None:
            return RemoteObjectBackend(client)
        return RemoteObjectBackend.from_settings(settings)
    return LocalFilesystemBackend(Path(settings.storage_root), signer)


class StorageAdapter:
    def __init__(self, backend: StorageBackend, codec: SignatureCodec, default_ttl_s: int) -> None:
        self.backend = backend
        self.codec = codec
        self.default_ttl_s = default_ttl_s

    @property
    def local(self) -> LocalFilesystemBackend | None:
        return self.backend if isinstance(self.backend, LocalFilesystemBackend) else None

    def _ttl(self, ttl_s: int | None) -> int:
        return self.default_ttl_s if ttl_s is None else ttl_s

    def _check(self, bucket: str, key: str) -> None:
        if not bucket or not key:
            raise StorageKeyError("Bucket and key are required")

    def generate_upload_url(
        self, bucket: str, key: str, content_type: str, ttl_s: int | None = None
    ) -> str:
        self._check(bucket, key)
        with timed("storage.upload_url.latency_ms"):
            url = self.backend.generate_upload_url(
                bucket, key, content_type, self._ttl(ttl_s)
            )
        increment("storage.upload_url.issued")
        log_event("storage.upload_url", backend=self.backend.name, bucket=bucket, key=key)
        return url

    def generate_download_url(self, bucket: str, key: str, ttl_s: int | None = None) -> str:
        self._check(bucket, key)
        url = self.backend.generate_download_url(bucket, key, self._ttl(ttl_s))
        increment("storage.download_url.issued")
        log_event("storage.download_url", backend=self.backend.name, bucket=bucket, key=key)
        return url

    def delete_object(self, bucket: str, key: str) -> None:
        self._check(bucket, key)
        self.backend.delete_object(bucket, key)
        increment("storage.delete.calls")
        log_event("storage.delete", backend=self.backend.name, bucket=bucket, key=key)


def build_storage(settings: Settings, client: Any = None) -> StorageAdapter:
    if not settings.signing_secret:
        log_event(
            "storage.signing_secret_fallback",
            level=logging.WARNING,
            hint="set KAN_SIGNING_SECRET",
        )
    codec = SignatureCodec(settings.signing_secret)
    signer = UrlSigner(codec, settings.base_url)
    backend = select_backend(settings, signer, client=client)
    log_event("storage.backend_selected", backend=backend.name)
    return StorageAdapter(backend, codec, settings.signed_url_ttl_s)
