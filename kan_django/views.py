from __future__ import annotations

import logging
import mimetypes

from django.http import FileResponse, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from kan_api.config import settings as app_settings
from kan_api.observability import increment, log_event
from kan_api.storage import FILES_CORS_HEADERS, ObjectKey, StorageKeyError, build_storage

READ_CHUNK_BYTES = 64 * 1024
storage = build_storage(app_settings)


def api_error(status: int, code: str, message: str, details: dict | None = None):
    return JsonResponse(
        {
            "error": {
                "code": code,
                "message": message,
                "details": details or {},
            }
        },
        status=status,
    )


def _body_chunks(request):
    while True:
        chunk = request.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        yield chunk


@csrf_exempt
def files_view(request, file_path: str):
    if request.method == "OPTIONS":
        response = HttpResponse(status=200)
        for name, value in FILES_CORS_HEADERS.items():
            response[name] = value
        return response

    local = storage.local
    if local is None:
        return api_error(404, "not_found", "Resource not found")

    object_key = ObjectKey.from_path(file_path)
    if object_key is None:
        return api_error(400, "invalid_path", "Invalid path")
    try:
        local.resolve_path(object_key.bucket, object_key.key)
    except StorageKeyError:
        return api_error(400, "invalid_path", "Invalid path")

    expires = request.GET.get("expires")
    signature = request.GET.get("signature")
    if not storage.codec.verify(object_key.files_path, request.method, expires, signature):
        increment("files.signature.rejected")
        return api_error(403, "invalid_signature", "Invalid or expired signature")

    try:
        if request.method == "PUT":
            written = local.write_chunks(object_key.bucket, object_key.key, _body_chunks(request))
            increment("files.put.calls")
            log_event(
                "files.put", bucket=object_key.bucket, key=object_key.key, size_bytes=written
            )
            return JsonResponse({"success": True})
        if request.method == "GET":
            path = local.open_path(object_key.bucket, object_key.key)
            if path is None:
                return api_error(404, "not_found", "File not found")
            increment("files.get.calls")
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            return FileResponse(path.open("rb"), content_type=content_type)
    except OSError as exc:
        log_event(
            "files.io_error",
            level=logging.ERROR,
            method=request.method,
            bucket=object_key.bucket,
            key=object_key.key,
            error=repr(exc),
        )
        return api_error(500, "internal_error", "Internal Server Error")
    return api_error(405, "method_not_allowed", "Method not allowed")
