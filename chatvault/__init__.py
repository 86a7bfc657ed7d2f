"""chatvault: local-first, optionally encrypted persistence for chat transcripts and credentials."""

__version__ = "0.1.0"

from .app import Vault
from .logging_config import configure_logging, configure_ops_log
from .errors import (
    AuthenticationError,
    BackendUnavailable,
    ChatVaultError,
    EncryptionNotInitialized,
    PartialWriteFailure,
    PermissionDenied,
    QuotaExceeded,
)

__all__ = [
    "Vault",
    "configure_logging",
    "configure_ops_log",
    "AuthenticationError",
    "BackendUnavailable",
    "ChatVaultError",
    "EncryptionNotInitialized",
    "PartialWriteFailure",
    "PermissionDenied",
    "QuotaExceeded",
]
