"""Cryptographic primitives for the vault.

Key hierarchy:
    Master password + vault salt
        └── Argon2id → 256-bit master key (held in memory while unlocked)
                └── encrypts each secret value with AES-256-GCM

Ciphertext layout (persisted, must stay stable):
    [nonce 12B][encrypted payload][GCM tag 16B]

The cipher is stateless: every call receives the key explicitly.
"""

import os

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import (
    CiphertextFormatError,
    DecryptionError,
    EncryptionError,
    IntegrityError,
)

NONCE_SIZE = 12  # 96 bits, standard for AES-GCM
KEY_SIZE = 32  # 256 bits for AES-256
SALT_SIZE = 16  # 128 bits
TAG_SIZE = 16  # GCM authentication tag

# Argon2id cost parameters. Changing any of these changes every derived key.
ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST = 64 * 1024  # KiB, i.e. 64 MiB
ARGON2_PARALLELISM = 4


def generate_salt() -> bytes:
    """Generate a random 128-bit salt for key derivation.

    Raises:
        EncryptionError: If the OS entropy source fails.
    """
    try:
        return os.urandom(SALT_SIZE)
    except OSError as err:
        raise EncryptionError("Entropy source unavailable", operation="generate_salt") from err


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a password using Argon2id.

    Deterministic for a given (password, salt) pair; different salts give
    unrelated keys for the same password.
    """
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=bytes(salt),
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt plaintext with AES-256-GCM under a fresh random nonce.

    Returns:
        ``nonce || ciphertext_with_tag``.

    Raises:
        EncryptionError: If the key is not 256 bits or the entropy source fails.
    """
    if len(key) != KEY_SIZE:
        raise EncryptionError(
            f"Key must be {KEY_SIZE} bytes, got {len(key)}", operation="encrypt"
        )
    try:
        nonce = os.urandom(NONCE_SIZE)
    except OSError as err:
        raise EncryptionError("Entropy source unavailable", operation="encrypt") from err
    aesgcm = AESGCM(key)
    return nonce + aesgcm.encrypt(nonce, plaintext, None)


def decrypt(blob: bytes, key: bytes) -> bytes:
    """Authenticate and decrypt a blob produced by :func:`encrypt`.

    Raises:
        CiphertextFormatError: If the blob is shorter than the nonce.
        IntegrityError: If authentication fails (wrong key or tampered data).
        DecryptionError: If the key is not 256 bits.
    """
    if len(blob) < NONCE_SIZE:
        raise CiphertextFormatError(
            f"Ciphertext too short: {len(blob)} bytes (minimum {NONCE_SIZE})",
            reason="format",
        )
    if len(key) != KEY_SIZE:
        raise DecryptionError(
            f"Key must be {KEY_SIZE} bytes, got {len(key)}", reason="key"
        )
    nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, sealed, None)
    except InvalidTag as err:
        raise IntegrityError("Ciphertext failed authentication", reason="integrity") from err
