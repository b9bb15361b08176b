from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so the
    API layer can render them, while the orchestrator turns them into chat text:
    - validation_error (400)
    - precondition_failed (412)
    - forbidden (403)
    - rate_limited (429)
    - collaborator_error (502)
    - decryption_failed (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input such as a bad address or missing argument (400)."""
    status_code = 400
    error_code = "validation_error"


class PreconditionError(ServiceError):
    """A required earlier step is missing: no account, no garden, no session (412)."""
    status_code = 412
    error_code = "precondition_failed"


class PermissionDeniedError(ServiceError):
    """Caller lacks the required role (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, reset_in_ms: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reset_in_ms = reset_in_ms


class CollaboratorError(ServiceError):
    """An external collaborator (ledger, transcription, notifier) failed (502)."""
    status_code = 502
    error_code = "collaborator_error"

    def __init__(self, message: str, *, retryable: bool = True, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable


class DecryptionError(ServiceError):
    """Ciphertext failed authentication or could not be parsed (500)."""
    status_code = 500
    error_code = "decryption_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PreconditionError",
    "PermissionDeniedError",
    "RateLimitedError",
    "CollaboratorError",
    "DecryptionError",
]
