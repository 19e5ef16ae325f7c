# errors.py
"""
Typed failures shared by the auth and submission code.

Every error carries a short machine code and an HTTP-meaningful status.
The blueprints turn them into JSON; nothing below decides user-facing text
beyond a default message.
"""
from typing import Any, Dict, Optional

import psycopg
from flask import jsonify, request


class PortalError(Exception):
    code = "error"
    status = 500
    default_message = "Request failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message}


class Unauthorized(PortalError):
    code = "unauthorized"
    status = 401
    default_message = "Authentication required."


class TokenDenied(Unauthorized):
    """Token rejected. `reason` is one of REASONS."""

    REASONS = ("missing", "malformed", "bad_signature", "expired")

    def __init__(self, reason: str, message: Optional[str] = None):
        if reason not in self.REASONS:
            raise ValueError(f"unknown denial reason: {reason!r}")
        super().__init__(message or f"Token rejected ({reason}).")
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason
        return out


class Forbidden(PortalError):
    code = "forbidden"
    status = 403
    default_message = "Your role does not allow this action."


class NotFound(PortalError):
    code = "not_found"
    status = 404
    default_message = "Not found."


class Closed(PortalError):
    code = "closed"
    status = 409
    default_message = "This exam is closed."


class AlreadyAttempted(PortalError):
    code = "already_attempted"
    status = 409
    default_message = "You have already taken this exam."


class Malformed(PortalError):
    code = "malformed"
    status = 400
    default_message = "Malformed request."


class StorageError(PortalError):
    code = "storage_error"
    status = 500
    default_message = "Internal Server Error"


def install_error_handlers(bp) -> None:
    """JSON error responses for a blueprint; store failures never leak query text."""

    @bp.errorhandler(PortalError)
    def _portal_error(e: PortalError):
        return jsonify(e.to_dict()), e.status

    @bp.errorhandler(psycopg.Error)
    def _storage_error(e: psycopg.Error):
        print(f"[DB] {request.method} {request.path} failed: {type(e).__name__}: {e}", flush=True)
        err = StorageError()
        return jsonify(err.to_dict()), err.status


__all__ = [
    "PortalError", "Unauthorized", "TokenDenied", "Forbidden", "NotFound",
    "Closed", "AlreadyAttempted", "Malformed", "StorageError", "install_error_handlers",
]
