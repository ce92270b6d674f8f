"""Secrets manager: business logic combining vault state, crypto and storage.

This module ties together the in-memory master key, the envelope cipher and
the persistence layer to provide create/read/update/delete of secrets with
transparent encryption.
"""

from dataclasses import replace

from loguru import logger

from .crypto import decrypt, encrypt
from .errors import DecryptionError, VaultLockedError
from .models import (
    CreateSecretRequest,
    SecretRecord,
    SecretResponse,
    UpdateSecretRequest,
    validate_secret_id,
)
from .state import VaultState
from .store import SecretStore


class SecretsManager:
    """Encrypted secrets manager gated by the vault lock.

    Security model:
        - A single master key, derived from the master password, encrypts
          every secret value
        - The key only exists in memory while the vault is unlocked
        - Each secret value gets its own random nonce
        - The store never sees plaintext

    The key is fetched from ``VaultState`` before any store I/O, so no vault
    lock is held while the store works. Every operation is a single attempt;
    errors propagate as ``VaultError`` subclasses.
    """

    def __init__(self, vault: VaultState, store: SecretStore):
        self._vault = vault
        self._store = store

    def _seal(self, value: str, key: bytes) -> bytes:
        return encrypt(value.encode("utf-8"), key)

    def _open(self, record: SecretRecord, key: bytes) -> str:
        """Decrypt a stored record, tagging failures with its id."""
        try:
            plaintext = decrypt(record.ciphertext, key)
        except DecryptionError as err:
            raise type(err)(
                f"Failed to decrypt secret '{record.id}'",
                secret_id=record.id,
                **err.context,
            ) from err
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionError(
                f"Secret '{record.id}' is not valid UTF-8",
                secret_id=record.id,
                reason="encoding",
            ) from err

    # ── Secret operations ──────────────────────────────────────────

    def create(self, request: CreateSecretRequest) -> SecretResponse:
        """Encrypt and store a new secret. Echoes the plaintext back."""
        request.validate()
        key = self._vault.get_key()

        ciphertext = self._seal(request.value, key)
        record = self._store.create(
            SecretRecord(id="", title=request.title, type=request.type, ciphertext=ciphertext)
        )
        logger.info(f"Secret created: id={record.id} type={record.type}")
        return SecretResponse.from_record(record, request.value)

    def get(self, secret_id: str) -> SecretResponse:
        """Decrypt and return a single secret."""
        validate_secret_id(secret_id)
        key = self._vault.get_key()

        record = self._store.get(secret_id)
        return SecretResponse.from_record(record, self._open(record, key))

    def list(self) -> list[SecretResponse]:
        """Decrypt and return every secret, newest first.

        Fail-closed: one unreadable record aborts the whole call with
        ``DecryptionError``; nothing is silently skipped.
        """
        key = self._vault.get_key()

        records = self._store.list()
        return [SecretResponse.from_record(r, self._open(r, key)) for r in records]

    def update(self, secret_id: str, request: UpdateSecretRequest) -> SecretResponse:
        """Re-encrypt a secret with a new value, keeping its id and created_at."""
        validate_secret_id(secret_id)
        request.validate()
        key = self._vault.get_key()

        existing = self._store.get(secret_id)
        ciphertext = self._seal(request.value, key)
        record = self._store.update(
            replace(existing, title=request.title, type=request.type, ciphertext=ciphertext)
        )
        logger.info(f"Secret updated: id={record.id}")
        return SecretResponse.from_record(record, request.value)

    def delete(self, secret_id: str) -> None:
        """Delete a secret permanently. Needs the vault unlocked but not the key."""
        validate_secret_id(secret_id)
        if not self._vault.is_unlocked():
            raise VaultLockedError("Vault is locked")

        self._store.delete(secret_id)
        logger.info(f"Secret deleted: id={secret_id}")
