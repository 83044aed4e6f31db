"""
Shared plumbing for Haven's domain record services.

Every service follows the same convention:
- resolve: the PrincipalContext passed in (None = no principal)
- write: encrypt the sensitive fields declared in ENCRYPTED_COLUMNS, attach
  the scoping column, insert, return the decrypted view of the stored row
- read: filter by the scoping column, decrypt each row; a row that cannot
  be decrypted or whose decrypted value has the wrong shape is returned
  flagged (decryption_failed=True, sensitive fields None)
"""

from __future__ import annotations

import logging
from typing import Any

from haven.core.session import PrincipalContext
from haven.core.store import RecordStore
from haven.lib.exceptions import DecryptionFailed, NoActivePrincipal, SerializationError
from haven.models import ENCRYPTED_COLUMNS

logger = logging.getLogger(__name__)

# Expected Python type of decrypted JSON fields, by "table.field"
JSON_SHAPES: dict[str, type] = {
    "mood_entries.triggers": list,
    "peer_matches.seeker_preferences": dict,
}


class InvalidShape(ValueError):
    """A decrypted value is well-formed JSON but not the expected shape."""


def check_shape(table: str, field: str, value: Any) -> Any:
    expected = JSON_SHAPES.get(f"{table}.{field}")
    if expected is None:
        return value
    if not isinstance(value, expected):
        raise InvalidShape(f"{table}.{field} must be {expected.__name__}")
    if expected is list and not all(isinstance(item, str) for item in value):
        raise InvalidShape(f"{table}.{field} must contain only strings")
    return value


class RecordService:
    """Base class holding the record store and the field cipher convention."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    @property
    def store(self) -> RecordStore:
        return self._store

    @staticmethod
    def require_principal(ctx: PrincipalContext | None) -> PrincipalContext:
        if ctx is None:
            raise NoActivePrincipal("No authenticated or anonymous principal")
        return ctx

    @staticmethod
    def encrypt_fields(ctx: PrincipalContext, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """Map logical sensitive fields to their ciphertext columns. None stays None."""
        encrypted: dict[str, Any] = {}
        for field, spec in ENCRYPTED_COLUMNS[table].items():
            if field not in values:
                continue
            value = values[field]
            if value is None:
                encrypted[spec.column] = None
            elif spec.is_json:
                encrypted[spec.column] = ctx.cipher.encrypt_json(value)
            else:
                encrypted[spec.column] = ctx.cipher.encrypt(value)
        return encrypted

    @staticmethod
    def decrypt_fields(
        ctx: PrincipalContext,
        table: str,
        row: dict[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        """
        Decrypt every sensitive column of `row`.

        Returns:
            (plain values by logical field name, decryption_failed)

        Raises:
            KeyNotInitialized: If the context's key has been cleared
        """
        fields = ENCRYPTED_COLUMNS[table]
        plain: dict[str, Any] = {}
        try:
            for field, spec in fields.items():
                token = row.get(spec.column)
                if token is None:
                    plain[field] = None
                elif spec.is_json:
                    plain[field] = check_shape(table, field, ctx.cipher.decrypt_json(token))
                else:
                    plain[field] = ctx.cipher.decrypt(token)
        except (DecryptionFailed, SerializationError, InvalidShape) as e:
            logger.warning(
                "row_decryption_failed",
                extra={"table": table, "row_id": row.get("id"), "error": type(e).__name__},
            )
            return {field: None for field in fields}, True
        return plain, False


__all__ = ["JSON_SHAPES", "InvalidShape", "RecordService", "check_shape"]
