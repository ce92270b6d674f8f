"""Persistence layer for encrypted secrets.

``SecretStore`` is the contract the secrets manager depends on;
``SQLiteSecretStore`` is the bundled implementation. Stores only ever see
ciphertext: they assign identity and timestamps and nothing else.
"""

import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from loguru import logger

from .errors import NotFoundError, StoreError
from .models import SecretRecord


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SecretStore(ABC):
    """
    Abstract persistence contract for secret records.

    Implementations raise ``NotFoundError`` for unknown identities and
    ``StoreError`` for any failure of the underlying medium.
    """

    @abstractmethod
    def create(self, record: SecretRecord) -> SecretRecord:
        """
        Persist a new record.

        Returns:
            SecretRecord: A copy with ``id``, ``created_at`` and ``updated_at`` assigned.
        """
        ...

    @abstractmethod
    def get(self, secret_id: str) -> SecretRecord:
        """Fetch a record by identity."""
        ...

    @abstractmethod
    def list(self) -> list[SecretRecord]:
        """Return every record, newest first."""
        ...

    @abstractmethod
    def update(self, record: SecretRecord) -> SecretRecord:
        """
        Replace title, type and ciphertext of an existing record.

        Returns:
            SecretRecord: A copy with ``updated_at`` refreshed.
        """
        ...

    @abstractmethod
    def delete(self, secret_id: str) -> None:
        """Remove a record permanently."""
        ...


class SQLiteSecretStore(SecretStore):
    """SQLite-backed storage for encrypted secrets."""

    _COLUMNS = "id, title, type, ciphertext, created_at, updated_at"

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction, always closing it."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as err:
            raise StoreError("Failed to open secrets database", path=self.db_path) from err
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            with conn:
                yield conn
        except sqlite3.Error as err:
            logger.error(f"SQLite error on {self.db_path}: {err}")
            raise StoreError("Secrets database operation failed") from err
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS secrets (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    type TEXT NOT NULL,
                    ciphertext BLOB NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_secrets_title ON secrets(title);
                CREATE INDEX IF NOT EXISTS idx_secrets_type ON secrets(type);
            """)

    @staticmethod
    def _row_to_record(row: tuple) -> SecretRecord:
        secret_id, title, secret_type, ciphertext, created_at, updated_at = row
        return SecretRecord(
            id=secret_id,
            title=title,
            type=secret_type,
            ciphertext=bytes(ciphertext),
            created_at=created_at,
            updated_at=updated_at,
        )

    def create(self, record: SecretRecord) -> SecretRecord:
        now = _now()
        created = replace(record, id=str(uuid.uuid4()), created_at=now, updated_at=now)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO secrets ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    created.id,
                    created.title,
                    created.type,
                    created.ciphertext,
                    created.created_at,
                    created.updated_at,
                ),
            )
        return created

    def get(self, secret_id: str) -> SecretRecord:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM secrets WHERE id = ?",
                (secret_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Secret '{secret_id}' not found", secret_id=secret_id)
        return self._row_to_record(row)

    def list(self) -> list[SecretRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM secrets "
                "ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def update(self, record: SecretRecord) -> SecretRecord:
        updated = replace(record, updated_at=_now())
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE secrets SET title = ?, type = ?, ciphertext = ?, updated_at = ? "
                "WHERE id = ?",
                (
                    updated.title,
                    updated.type,
                    updated.ciphertext,
                    updated.updated_at,
                    updated.id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Secret '{record.id}' not found", secret_id=record.id)
            row = conn.execute(
                "SELECT created_at FROM secrets WHERE id = ?", (updated.id,)
            ).fetchone()
        return replace(updated, created_at=row[0])

    def delete(self, secret_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM secrets WHERE id = ?", (secret_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Secret '{secret_id}' not found", secret_id=secret_id)
