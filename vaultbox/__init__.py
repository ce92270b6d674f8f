"""Password-gated secrets vault with envelope encryption at rest."""

from .manager import SecretsManager
from .state import VaultState
from .store import SecretStore, SQLiteSecretStore

__version__ = "0.1.0"

__all__ = ["SecretsManager", "VaultState", "SecretStore", "SQLiteSecretStore"]
