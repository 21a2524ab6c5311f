from __future__ import annotations

import logging
import mimetypes
import re
import time
import uuid

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import FileResponse, Response
from sqlalchemy import select
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from kan_api.auth import User, get_user, member_board_or_404
from kan_api.config import settings
from kan_api.db import board, generate_uid, now_ms, session_scope
from kan_api.errors import (
    bad_request,
    forbidden,
    internal_error,
    method_not_allowed,
    not_found,
    validation_error,
)
from kan_api.observability import increment, log_event, observe_ms, snapshot, timed
from kan_api.schemas import (
    BoardCoverUpdateRequest,
    CoverImageUploadRequest,
    CoverImageUploadResponse,
)
from kan_api.storage import (
    FILES_CORS_HEADERS,
    FILES_PREFIX,
    ObjectKey,
    StorageAdapter,
    StorageKeyError,
    build_storage,
)

ALLOWED_COVER_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

app = FastAPI(title="kan-storage")
app.state.storage = build_storage(settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_observability(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    t0 = time.perf_counter()
    response = None
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - t0) * 1000.0
        increment("http.requests.total")
        observe_ms("http.request.latency_ms", duration_ms)
        log_event(
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=status_code,
            duration_ms=round(duration_ms, 2),
            user_id=request.headers.get("x-user-id"),
        )
        if response is None:
            response = Response(status_code=status_code)
        response.headers["x-request-id"] = request_id


def get_storage(request: Request) -> StorageAdapter:
    return request.app.state.storage


@app.get("/metrics")
def metrics():
    return snapshot()


@app.get("/health")
def health(storage: StorageAdapter = Depends(get_storage)):
    return {"ok": True, "ts": now_ms(), "storage": storage.backend.name}


def _is_absolute_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)[:200]


def _owned_cover_key(key: str, board_public_id: str) -> bool:
    return key.startswith(f"board-covers/{board_public_id}/") and ".." not in key.split("/")


def _resolve_cover(cover_image: str | None, storage: StorageAdapter) -> str | None:
    if not cover_image or _is_absolute_url(cover_image):
        return cover_image
    if not settings.attachments_bucket:
        return cover_image
    return storage.generate_download_url(
        settings.attachments_bucket, cover_image, settings.signed_url_ttl_s
    )


def _board_json(row, storage: StorageAdapter) -> dict:
    return {
        "board_id": row["public_id"],
        "name": row["name"],
        "slug": row["slug"],
        "cover_image": _resolve_cover(row["cover_image"], storage),
        "cover_image_key": row["cover_image"],
    }


@app.get(f"{settings.api_prefix}/boards/{{board_public_id}}")
def get_board(
    board_public_id: str,
    user: User = Depends(get_user),
    storage: StorageAdapter = Depends(get_storage),
):
    with session_scope() as session:
        row = member_board_or_404(session, board_public_id, user)
        return _board_json(row, storage)


@app.post(
    f"{settings.api_prefix}/boards/{{board_public_id}}/cover-image",
    response_model=CoverImageUploadResponse,
)
def upload_cover_image(
    board_public_id: str,
    body: CoverImageUploadRequest,
    user: User = Depends(get_user),
    storage: StorageAdapter = Depends(get_storage),
):
    t0 = time.perf_counter()
    if body.size > settings.cover_max_bytes:
        raise validation_error(
            "file_too_large",
            "Cover image is too large",
            {"max_bytes": settings.cover_max_bytes},
        )
    if body.content_type not in ALLOWED_COVER_CONTENT_TYPES:
        raise validation_error(
            "invalid_content_type",
            f"Unsupported content type: {body.content_type}",
            {"allowed": sorted(ALLOWED_COVER_CONTENT_TYPES)},
        )
    with session_scope() as session:
        member_board_or_404(session, board_public_id, user)

    if not settings.attachments_bucket:
        raise internal_error("bucket_not_configured", "Attachments bucket not configured")

    key = f"board-covers/{board_public_id}/{generate_uid()}-{sanitize_filename(body.filename)}"
    url = storage.generate_upload_url(
        settings.attachments_bucket, key, body.content_type, settings.signed_url_ttl_s
    )
    increment("boards.cover_upload_url.calls")
    observe_ms("boards.cover_upload_url.latency_ms", (time.perf_counter() - t0) * 1000.0)
    log_event(
        "boards.cover_upload_url",
        board_id=board_public_id,
        user_id=user.user_id,
        key=key,
        size=body.size,
    )
    return {"url": url, "key": key}


@app.put(f"{settings.api_prefix}/boards/{{board_public_id}}/cover")
def update_board_cover(
    board_public_id: str,
    body: BoardCoverUpdateRequest,
    user: User = Depends(get_user),
    storage: StorageAdapter = Depends(get_storage),
):
    new_cover = body.cover_image or None
    if new_cover and not _is_absolute_url(new_cover):
        if not _owned_cover_key(new_cover, board_public_id):
            raise validation_error("invalid_cover_key", "Cover key does not belong to this board")

    with session_scope() as session:
        row = member_board_or_404(session, board_public_id, user)
        previous = row["cover_image"]
        session.execute(board.update().where(board.c.id == row["id"]).values(cover_image=new_cover))
        session.commit()
        updated = session.execute(select(board).where(board.c.id == row["id"])).mappings().one()

    if (
        previous
        and previous != new_cover
        and not _is_absolute_url(previous)
        and settings.attachments_bucket
    ):
        try:
            storage.delete_object(settings.attachments_bucket, previous)
        except (BotoCoreError, ClientError, StorageKeyError) as exc:
            log_event(
                "boards.cover_delete_failed",
                level=logging.WARNING,
                board_id=board_public_id,
                key=previous,
                error=repr(exc),
            )
    log_event(
        "boards.cover_updated",
        board_id=board_public_id,
        user_id=user.user_id,
        cleared=new_cover is None,
    )
    return _board_json(updated, storage)


@app.options(f"{FILES_PREFIX}/{{file_path:path}}")
def files_preflight(file_path: str):
    return Response(status_code=200, headers=FILES_CORS_HEADERS)


@app.api_route(
    f"{FILES_PREFIX}/{{file_path:path}}",
    methods=["GET", "PUT", "POST", "PATCH", "DELETE"],
)
async def files_endpoint(
    file_path: str,
    request: Request,
    expires: str | None = Query(default=None),
    signature: str | None = Query(default=None),
    storage: StorageAdapter = Depends(get_storage),
):
    local = storage.local
    if local is None:
        raise not_found()

    object_key = ObjectKey.from_path(file_path)
    if object_key is None:
        raise bad_request("invalid_path", "Invalid path")
    try:
        await run_in_threadpool(local.resolve_path, object_key.bucket, object_key.key)
    except StorageKeyError as exc:
        raise bad_request("invalid_path", "Invalid path") from exc

    method = request.method
    if not storage.codec.verify(object_key.files_path, method, expires, signature):
        increment("files.signature.rejected")
        raise forbidden("invalid_signature", "Invalid or expired signature")

    try:
        if method == "PUT":
            with timed("files.put.latency_ms"):
                written = await local.write_stream(
                    object_key.bucket, object_key.key, request.stream()
                )
            increment("files.put.calls")
            log_event(
                "files.put", bucket=object_key.bucket, key=object_key.key, size_bytes=written
            )
            return {"success": True}
        if method == "GET":
            path = await run_in_threadpool(local.open_path, object_key.bucket, object_key.key)
            if path is None:
                raise not_found("File not found")
            increment("files.get.calls")
            media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            return FileResponse(path, media_type=media_type)
    except ClientDisconnect as exc:
        log_event(
            "files.put_interrupted",
            level=logging.WARNING,
            bucket=object_key.bucket,
            key=object_key.key,
        )
        raise bad_request("client_disconnected", "Upload interrupted") from exc
    except OSError as exc:
        log_event(
            "files.io_error",
            level=logging.ERROR,
            method=method,
            bucket=object_key.bucket,
            key=object_key.key,
            error=repr(exc),
        )
        raise internal_error() from exc
    raise method_not_allowed()
