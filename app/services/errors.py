"""Domain exceptions raised by the ingestion and delivery services."""

from __future__ import annotations

TOKEN_INVALID_CODE = 190
CONSENT_REQUIRED_CODE = 230
USER_NOT_FOUND_CODE = 9010
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613})


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


class InboxError(Exception):
    """Base class for inbox domain failures."""

    code = "inbox_error"
    status_code = 400


class MalformedPayloadError(InboxError):
    code = "malformed_payload"
    status_code = 422


class ReauthorizationRequiredError(InboxError):
    code = "reauthorization_required"
    status_code = 409


class LockNotAcquiredError(InboxError):
    """Another worker holds the per-contact lock."""

    code = "lock_not_acquired"
    status_code = 409


class OAuthFlowError(InboxError):
    code = "oauth_failed"
    status_code = 400


class MetaApiError(InboxError):
    """An error envelope returned by the Graph API (or a transport failure)."""

    code = "meta_api_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        error_code: int | None = None,
        error_subcode: int | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.http_status = http_status

    @classmethod
    def from_response_body(cls, body: object, http_status: int | None = None) -> "MetaApiError":
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return cls(f"HTTP {http_status}", http_status=http_status)
        return cls(
            str(error.get("message") or f"HTTP {http_status}"),
            error_code=_as_int(error.get("code")),
            error_subcode=_as_int(error.get("error_subcode")),
            http_status=http_status,
        )

    @property
    def is_token_invalid(self) -> bool:
        return self.error_code == TOKEN_INVALID_CODE

    @property
    def is_consent_required(self) -> bool:
        return self.error_code == CONSENT_REQUIRED_CODE

    @property
    def is_user_not_found(self) -> bool:
        return self.error_code == USER_NOT_FOUND_CODE

    @property
    def is_rate_limited(self) -> bool:
        return self.error_code in RATE_LIMIT_CODES or self.http_status == 429

    def describe(self) -> str:
        return f"{self.error_code if self.error_code is not None else self.http_status} - {self.message}"

    def __str__(self) -> str:
        return self.describe()
