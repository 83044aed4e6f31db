"""
Service Result for Haven.

The (data, error) pair returned by every domain service operation. Services
never raise across their public boundary: a failure is an `error` dict
built by `haven.lib.errors.build_error_response`, and `data` is None.

"No row" for singleton reads is a success with data=None, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from haven.lib import errors
from haven.lib.exceptions import (
    CapacityReached,
    DecryptionFailed,
    HavenError,
    InvalidTransition,
    KeyNotInitialized,
    NoActivePrincipal,
    SerializationError,
    StoreError,
)

T = TypeVar("T")

_EXCEPTION_CODES: tuple[tuple[type[HavenError], str], ...] = (
    (NoActivePrincipal, errors.NO_ACTIVE_PRINCIPAL),
    (KeyNotInitialized, errors.KEY_NOT_INITIALIZED),
    (DecryptionFailed, errors.DECRYPTION_FAILED),
    (SerializationError, errors.DECRYPTION_FAILED),
    (StoreError, errors.STORE_ERROR),
    (CapacityReached, errors.CAPACITY_REACHED),
    (InvalidTransition, errors.INVALID_TRANSITION),
)


@dataclass
class ServiceResult(Generic[T]):
    """Response returned by domain service operations.

    Attributes:
        data: The plain (decrypted) view object, list of views, or None
        error: Structured error {"code", "message", "details"?} or None
    """

    data: T | None = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> str | None:
        return self.error["code"] if self.error else None

    @classmethod
    def success(cls, data: T | None = None) -> ServiceResult[T]:
        return cls(data=data)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        return cls(error=errors.build_error_response(code, message=message, details=details))

    @classmethod
    def from_exception(cls, exc: Exception) -> ServiceResult[T]:
        """Translate a caught exception into a failure result.

        HavenError subclasses map to their error code; pydantic validation
        errors map to VALIDATION_ERROR with the offending field names.
        Anything else is INTERNAL_ERROR.
        """
        if isinstance(exc, ValidationError):
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            return cls.failure(errors.VALIDATION_ERROR, details={"fields": fields})
        for exc_type, code in _EXCEPTION_CODES:
            if isinstance(exc, exc_type):
                return cls.failure(code)
        return cls.failure(errors.INTERNAL_ERROR)


__all__ = ["ServiceResult"]
