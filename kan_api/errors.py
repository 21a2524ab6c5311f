from __future__ import annotations

from fastapi import HTTPException, status


def error(status_code: int, code: str, message: str, details: dict | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, "details": details or {}}},
    )


def unauthorized() -> HTTPException:
    return error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Authentication required")


def forbidden(code: str = "forbidden", message: str | None = None) -> HTTPException:
    return error(
        status.HTTP_403_FORBIDDEN, code, message or "You do not have permission for this action"
    )


def not_found(message: str = "Resource not found") -> HTTPException:
    return error(status.HTTP_404_NOT_FOUND, "not_found", message)


def bad_request(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_400_BAD_REQUEST, code, message, details)


def validation_error(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_422_UNPROCESSABLE_CONTENT, code, message, details)


def method_not_allowed() -> HTTPException:
    return error(status.HTTP_405_METHOD_NOT_ALLOWED, "method_not_allowed", "Method not allowed")


def internal_error(
    code: str = "internal_error", message: str = "Internal Server Error"
) -> HTTPException:
    return error(status.HTTP_500_INTERNAL_SERVER_ERROR, code, message)
