"""
Error taxonomy. Every failure a handler can surface is one of these; they are
HTTPExceptions so FastAPI renders them directly, and `main.py` adds the
machine-readable `code` to the body.
"""

from fastapi import HTTPException


class ApiError(HTTPException):
    status_code = 500
    code = "error"

    def __init__(self, detail: str, code: str = None):
        super().__init__(status_code=self.status_code, detail=detail)
        if code:
            self.code = code


class InvalidRequest(ApiError):
    status_code = 400
    code = "invalid_request"


class Unauthenticated(ApiError):
    status_code = 401
    code = "unauthenticated"


class InvalidRefreshToken(Unauthenticated):
    code = "invalid_refresh_token"


class Forbidden(ApiError):
    status_code = 403
    code = "forbidden"


class PendingApproval(Forbidden):
    code = "pending_approval"


class ChatWindowExpired(Forbidden):
    code = "chat_window_expired"


class NotFound(ApiError):
    status_code = 404
    code = "not_found"


class Conflict(ApiError):
    status_code = 409
    code = "conflict"


class StorageFailure(ApiError):
    status_code = 500
    code = "storage_failure"
