"""
Vault data models

Dataclasses shared by the vault core, the persistence layer and the HTTP
layer. Only ``SecretRecord`` ever carries ciphertext; the request and
response shapes carry plaintext and never reach the store.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import ValidationError

MAX_TITLE_LENGTH = 255
MAX_TYPE_LENGTH = 100


@dataclass
class SecretRecord:
    """
    A persisted secret.

    Attributes:
        id: Identity assigned by the store on create (empty until then).
        title: Human readable label.
        type: Free-form category, e.g. "api_token" or "password".
        ciphertext: ``nonce || sealed payload`` produced by the envelope cipher.
        created_at: ISO-8601 UTC timestamp assigned by the store on create.
        updated_at: ISO-8601 UTC timestamp refreshed by the store on update.
    """

    id: str
    title: str
    type: str
    ciphertext: bytes
    created_at: str = ""
    updated_at: str = ""


def _require_text(field_name: str, value: str, max_length: int | None = None) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} cannot exceed {max_length} characters", field=field_name
        )


def validate_secret_id(secret_id: str) -> None:
    _require_text("id", secret_id)


@dataclass
class CreateSecretRequest:
    """Plaintext input for creating a secret."""

    title: str
    type: str
    value: str

    def validate(self) -> None:
        """
        Reject missing or oversized fields.

        Raises:
            ValidationError: naming the first offending field.
        """
        _require_text("title", self.title, MAX_TITLE_LENGTH)
        _require_text("type", self.type, MAX_TYPE_LENGTH)
        if not isinstance(self.value, str) or self.value == "":
            raise ValidationError("value is required", field="value")


@dataclass
class UpdateSecretRequest(CreateSecretRequest):
    """Plaintext input for replacing a secret's title, type and value."""


@dataclass
class SecretResponse:
    """A decrypted secret as returned to callers."""

    id: str
    title: str
    type: str
    value: str
    created_at: str
    updated_at: str

    @classmethod
    def from_record(cls, record: SecretRecord, value: str) -> "SecretResponse":
        return cls(
            id=record.id,
            title=record.title,
            type=record.type,
            value=value,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "value": self.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VaultStatus:
    """
    Snapshot of the vault lock state.

    ``last_activity`` and ``auto_lock_in`` are only set while unlocked.
    """

    unlocked: bool
    last_activity: datetime | None = None
    auto_lock_in: timedelta | None = None

    def to_dict(self) -> dict:
        status: dict = {"unlocked": self.unlocked}
        if self.unlocked:
            status["last_activity"] = self.last_activity.isoformat()
            status["auto_lock_in"] = self.auto_lock_in.total_seconds()
        return status
