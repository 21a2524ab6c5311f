from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from kan_api.config import settings
from kan_api.signing import SignatureCodec, UrlSigner
from kan_api.storage import (
    LocalFilesystemBackend,
    ObjectKey,
    RemoteObjectBackend,
    StorageAdapter,
    StorageKeyError,
    build_storage,
    remote_configured,
    select_backend,
)

REMOTE = replace(
    settings,
    s3_access_key_id="AKIDEXAMPLE",
    s3_secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
    s3_region="us-east-1",
    s3_endpoint="http://minio.local:9000",
    s3_force_path_style=True,
)


class FakeS3Client:
    def __init__(self) -> None:
        self.deleted: list[tuple[str, str]] = []
        self.presigned: list[dict] = []

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.presigned.append({"method": ClientMethod, "params": Params, "expires": ExpiresIn})
        return f"https://s3.example.com/{Params['Bucket']}/{Params['Key']}?sig=fake"

    def delete_object(self, Bucket, Key):
        self.deleted.append((Bucket, Key))


@pytest.fixture()
def codec() -> SignatureCodec:
    return SignatureCodec("s3cret")


@pytest.fixture()
def local(tmp_path: Path, codec: SignatureCodec) -> LocalFilesystemBackend:
    return LocalFilesystemBackend(tmp_path, UrlSigner(codec, "http://localhost:3000"))


def test_object_key_from_path():
    assert ObjectKey.from_path("attachments/a/b.png") == ObjectKey("attachments", "a/b.png")
    assert ObjectKey.from_path("/attachments/b.png") == ObjectKey("attachments", "b.png")
    assert ObjectKey.from_path("attachments/b.png/") is None
    assert ObjectKey.from_path("attachments") is None
    assert ObjectKey.from_path("attachments/") is None
    assert ObjectKey("b", "k").files_path == "/api/files/b/k"


def test_remote_configured_needs_both_credentials():
    assert remote_configured(REMOTE)
    assert not remote_configured(replace(REMOTE, s3_secret_access_key=""))
    assert not remote_configured(replace(REMOTE, s3_access_key_id=""))


def test_select_backend_depends_only_on_credentials(codec: SignatureCodec):
    signer = UrlSigner(codec, "http://localhost:3000")
    local_settings = replace(settings, s3_access_key_id="", s3_secret_access_key="")
    assert isinstance(select_backend(local_settings, signer), LocalFilesystemBackend)
    assert isinstance(select_backend(REMOTE, signer), RemoteObjectBackend)
    assert isinstance(select_backend(REMOTE, signer, client=FakeS3Client()), RemoteObjectBackend)


def test_local_urls_are_signed_for_the_right_method(
    local: LocalFilesystemBackend, codec: SignatureCodec
):
    put_url = local.generate_upload_url("attachments", "covers/a.png", "image/png", 60)
    get_url = local.generate_download_url("attachments", "covers/a.png", 60)

    for url, method, other in ((put_url, "PUT", "GET"), (get_url, "GET", "PUT")):
        parts = urlsplit(url)
        assert parts.path == "/api/files/attachments/covers/a.png"
        query = parse_qs(parts.query)
        expires, sig = query["expires"][0], query["signature"][0]
        assert codec.verify(parts.path, method, expires, sig)
        assert not codec.verify(parts.path, other, expires, sig)


@pytest.mark.parametrize(
    ("bucket", "key"),
    [
        ("attachments", "../../etc/passwd"),
        ("attachments", "a/../../outside.txt"),
        ("attachments", ".."),
        ("..", "etc/passwd"),
        (".", "x"),
        ("a/b", "x"),
        ("attachments", ""),
        ("", "x"),
        ("attachments", "bad\x00name"),
    ],
)
def test_resolve_path_rejects_escapes(local: LocalFilesystemBackend, bucket: str, key: str):
    with pytest.raises(StorageKeyError):
        local.resolve_path(bucket, key)


def test_resolve_path_allows_nested_keys(local: LocalFilesystemBackend, tmp_path: Path):
    target = local.resolve_path("attachments", "a/../b/c.txt")
    assert target == (tmp_path / "attachments" / "b" / "c.txt").resolve()


def test_upload_url_refuses_traversal(local: LocalFilesystemBackend):
    with pytest.raises(StorageKeyError):
        local.generate_upload_url("attachments", "../../etc/passwd", "text/plain", 60)


def test_write_then_delete_local(local: LocalFilesystemBackend):
    written = local.write_chunks("attachments", "docs/readme.txt", [b"hello ", b"world"])
    path = local.open_path("attachments", "docs/readme.txt")

    assert written == 11
    assert path is not None
    assert path.read_bytes() == b"hello world"

    local.delete_object("attachments", "docs/readme.txt")
    assert local.open_path("attachments", "docs/readme.txt") is None


def test_local_delete_of_missing_file_logs_instead_of_raising(
    local: LocalFilesystemBackend, caplog
):
    with caplog.at_level(logging.WARNING, logger="kan"):
        local.delete_object("attachments", "never-written.bin")
    assert "storage.delete_failed" in caplog.text


def test_remote_presign_with_boto3():
    backend = RemoteObjectBackend.from_settings(REMOTE)

    put_url = backend.generate_upload_url("attachments", "covers/a.png", "image/png", 600)
    get_url = backend.generate_download_url("attachments", "covers/a.png", 600)

    for url in (put_url, get_url):
        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}" == "http://minio.local:9000"
        assert parts.path == "/attachments/covers/a.png"
        query = parse_qs(parts.query)
        assert query["X-Amz-Expires"] == ["600"]
        assert query["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]
        assert "X-Amz-Signature" in query
    assert put_url != get_url


def test_remote_backend_passes_through_to_client():
    client = FakeS3Client()
    backend = RemoteObjectBackend(client)

    backend.generate_upload_url("attachments", "k.png", "image/png", 120)
    backend.generate_download_url("attachments", "k.png", 60)
    backend.delete_object("attachments", "k.png")

    assert client.presigned[0] == {
        "method": "put_object",
        "params": {"Bucket": "attachments", "Key": "k.png", "ContentType": "image/png"},
        "expires": 120,
    }
    assert client.presigned[1]["method"] == "get_object"
    assert client.deleted == [("attachments", "k.png")]


def test_adapter_rejects_empty_bucket_or_key(local: LocalFilesystemBackend, codec):
    adapter = StorageAdapter(local, codec, default_ttl_s=60)
    with pytest.raises(StorageKeyError):
        adapter.generate_upload_url("", "k", "text/plain")
    with pytest.raises(StorageKeyError):
        adapter.generate_download_url("attachments", "")
    with pytest.raises(StorageKeyError):
        adapter.delete_object("", "")


def test_adapter_uses_default_ttl():
    client = FakeS3Client()
    adapter = StorageAdapter(RemoteObjectBackend(client), SignatureCodec("x"), default_ttl_s=900)
    adapter.generate_download_url("attachments", "k.png")
    assert client.presigned[0]["expires"] == 900


def test_build_storage_selects_backend_once(tmp_path: Path):
    adapter = build_storage(
        replace(settings, storage_root=str(tmp_path), s3_access_key_id="", s3_secret_access_key="")
    )
    assert adapter.backend.name == "local"
    assert adapter.local is adapter.backend

    remote = build_storage(REMOTE, client=FakeS3Client())
    assert remote.backend.name == "s3"
    assert remote.local is None


def test_build_storage_warns_on_fallback_secret(tmp_path: Path, caplog):
    with caplog.at_level(logging.WARNING, logger="kan"):
        build_storage(replace(settings, storage_root=str(tmp_path), signing_secret=""))
    assert "storage.signing_secret_fallback" in caplog.text


def test_adapter_honours_zero_ttl(local: LocalFilesystemBackend, codec: SignatureCodec):
    adapter = StorageAdapter(local, codec, default_ttl_s=3600)
    before = int(time.time())
    url = adapter.generate_download_url("attachments", "k.png", ttl_s=0)

    expires = int(parse_qs(urlsplit(url).query)["expires"][0])
    assert before <= expires <= int(time.time())


class SlowFile:
    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False

    def write(self, chunk: bytes) -> int:
        time.sleep(0.05)
        self.data.extend(chunk)
        return len(chunk)

    def close(self) -> None:
        self.closed = True


def test_write_stream_keeps_event_loop_responsive(local: LocalFilesystemBackend, monkeypatch):
    slow = SlowFile()
    monkeypatch.setattr(local, "_open_for_write", lambda bucket, key: slow)

    async def chunks():
        for _ in range(5):
            yield b"x" * 10

    async def run() -> tuple[int, int]:
        ticks = 0
        done = asyncio.Event()

        async def ticker() -> None:
            nonlocal ticks
            while not done.is_set():
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        written = await local.write_stream("attachments", "slow.bin", chunks())
        done.set()
        await task
        return written, ticks

    written, ticks = asyncio.run(run())
    assert written == 50
    assert bytes(slow.data) == b"x" * 50
    assert slow.closed
    assert ticks >= 5
