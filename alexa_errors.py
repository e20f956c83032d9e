# alexa_errors.py

from __future__ import annotations

from typing import Any


class AlexaError(RuntimeError):
    """Base error for every failure surfaced to MCP tools and REST handlers.

    Each subclass carries the HTTP status the REST layer answers with and a
    stable `error_type` string for tool results.
    """

    http_status: int = 500
    error_type: str = "alexa_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.error_type)
        self.details: dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": False, "error": str(self), "error_type": self.error_type}
        out.update(self.details)
        return out


class CredentialsMissing(AlexaError):
    http_status = 500
    error_type = "credentials_missing"

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message or "Missing Alexa credentials. Set ALEXA_UBID_MAIN and ALEXA_AT_MAIN (or UBID_MAIN/AT_MAIN)."
        )


class UpstreamError(AlexaError):
    """Non-2xx answer from an Alexa web endpoint."""

    http_status = 502
    error_type = "upstream_error"

    def __init__(self, message: str, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message, status=status, body=(body[:600] if body else None))
        self.status = status
        self.body = body[:600] if body else ""


class NotFound(AlexaError):
    http_status = 404
    error_type = "not_found"


class Ambiguous(AlexaError):
    http_status = 409
    error_type = "ambiguous"

    def __init__(self, message: str, candidates: list[str] | None = None) -> None:
        super().__init__(message, candidates=candidates)
        self.candidates = list(candidates or [])


class MissingIdentifier(AlexaError):
    http_status = 500
    error_type = "missing_identifier"


class InvalidRequest(AlexaError):
    http_status = 400
    error_type = "invalid_request"


class AnnouncementSuppressed(AlexaError):
    http_status = 403
    error_type = "announcement_suppressed"
