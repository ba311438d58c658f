"""Error taxonomy shared by provider adapters and the sync engine."""

from __future__ import annotations

import re

import httpx


class AlmanacError(RuntimeError):
    """Base error for calendar provider and sync failures."""


class CredentialError(AlmanacError):
    """Raised when an adapter cannot be built because required secrets are absent."""


class TransportError(AlmanacError):
    """Raised when a network/HTTP failure prevents a remote call from completing."""


class FormatError(AlmanacError):
    """Raised when a provider payload cannot be interpreted."""


class ProviderRejection(AlmanacError):
    """Raised when a remote API answers with a non-success status."""

    def __init__(self, *, provider: str, status_code: int, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        super().__init__(f"{provider} request failed ({status_code}): {message}")


_MAX_ERROR_LENGTH = 200


def redact_credentials(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|password|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|password|token)['"]?\s*:\s*)"""
        r"""(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error(exc: BaseException | str) -> str:
    """Collapse whitespace, redact secrets and truncate an error for storage."""
    raw = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
    return " ".join(redact_credentials(raw).split())[:_MAX_ERROR_LENGTH]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, human-readable message from an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_error(error_payload)
        message = payload.get("message") or payload.get("error_description")
        if isinstance(message, str) and message.strip():
            return sanitize_error(message)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error(raw_text)
    return response.reason_phrase or "Request failed without an error payload"
