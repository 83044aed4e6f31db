"""
Anonymous -> authenticated data migration for Haven.

Run by SessionManager.upgrade_to_authenticated() while both keys are still
available. For every principal-owned table and each of its scoping-column
prefixes, rows owned by the old anonymous id are:

1. re-encrypted: every ciphertext column is decrypted with the anonymous
   device key and encrypted again with the new session key (only where
   that role's key wrote the ciphertext, e.g. not for matches where the
   anonymous principal was the supporter)
2. re-pointed: the prefixed user_id column is set to the new user id and
   the prefixed anonymous_id column cleared

A row whose ciphertext cannot be decrypted is re-pointed with its
ciphertext untouched and counted as unreadable. A row that cannot be
re-pointed because the user already owns the singleton (streak, safety
plan, supporter profile, group membership) is left behind and counted
as skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from haven.core.session import PrincipalContext
from haven.core.store import Query, RecordStore
from haven.lib.encryption import EncryptionKey, FieldCipher
from haven.lib.exceptions import DecryptionFailed, InvalidTransition, StoreError
from haven.models import ENCRYPTED_COLUMNS, PRINCIPAL_SCOPES

logger = logging.getLogger(__name__)


@dataclass
class TableMigration:
    migrated: int = 0
    unreadable: int = 0
    skipped: int = 0


@dataclass
class MigrationReport:
    """Per-table counts of one migration run."""

    tables: dict[str, TableMigration] = field(default_factory=dict)

    @property
    def migrated(self) -> int:
        return sum(t.migrated for t in self.tables.values())

    @property
    def unreadable(self) -> int:
        return sum(t.unreadable for t in self.tables.values())

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.tables.values())

    def counts(self) -> dict[str, int]:
        return {name: t.migrated for name, t in self.tables.items() if t.migrated}


def rekey_row(
    table: str,
    row: dict[str, Any],
    old_key: EncryptionKey,
    new_key: EncryptionKey,
) -> dict[str, Any]:
    """
    New ciphertext for every encrypted column of `row`.

    Raises:
        DecryptionFailed: If any column does not decrypt with old_key
    """
    changes: dict[str, Any] = {}
    for spec in ENCRYPTED_COLUMNS.get(table, {}).values():
        token = row.get(spec.column)
        if token is None:
            continue
        changes[spec.column] = FieldCipher.encrypt_with(new_key, FieldCipher.decrypt_with(old_key, token))
    return changes


class AnonymousDataMigrator:
    """Moves an anonymous principal's records to an authenticated user."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def migrate(self, old: PrincipalContext, new: PrincipalContext) -> MigrationReport:
        """
        Re-key and re-point everything `old` owns to `new`.

        Raises:
            InvalidTransition: Unless old is anonymous and new is authenticated
            KeyNotInitialized: If either context's key has been cleared
        """
        if not old.identity.is_anonymous or new.identity.is_anonymous:
            raise InvalidTransition("Migration runs from an anonymous to an authenticated principal")

        old_key = old.keys.current_key
        new_key = new.keys.current_key
        report = MigrationReport()

        for table, scopes in PRINCIPAL_SCOPES.items():
            stats = report.tables.setdefault(table, TableMigration())
            for scope in scopes:
                rows = await self._store.select(table, Query().match(old.identity.scope(scope.prefix)))
                for row in rows:
                    changes = dict(new.identity.owner_values(scope.prefix))
                    if scope.owns_ciphertext:
                        try:
                            changes.update(rekey_row(table, row, old_key, new_key))
                        except DecryptionFailed:
                            stats.unreadable += 1
                    try:
                        await self._store.update(table, Query().eq("id", row["id"]), changes)
                    except StoreError:
                        stats.skipped += 1
                        continue
                    stats.migrated += 1

        logger.info(
            "anonymous_data_migrated",
            extra={
                "from": old.identity.log_id,
                "to": new.identity.log_id,
                "migrated": report.migrated,
                "unreadable": report.unreadable,
                "skipped": report.skipped,
            },
        )
        return report


__all__ = ["AnonymousDataMigrator", "MigrationReport", "TableMigration", "rekey_row"]
