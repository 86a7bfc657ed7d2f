"""Error types raised and reported by the chatvault stores."""

from typing import Optional


class ChatVaultError(Exception):
    """Base class for all chatvault errors."""


class BackendUnavailable(ChatVaultError):
    """The transactional store could not be opened; callers fall back."""


class AuthenticationError(ChatVaultError):
    """An envelope failed authentication: wrong key, tampering or truncation."""


class EncryptionNotInitialized(ChatVaultError):
    """Encrypt or decrypt was called before a key was derived."""


class PermissionDenied(ChatVaultError):
    """The mirror directory is unbound, stale or revoked."""


class QuotaExceeded(ChatVaultError):
    """Storage usage is above the warning threshold."""

    def __init__(self, used: int, quota: int):
        self.used = used
        self.quota = quota
        percent = round(used / quota * 100) if quota else 0
        self.percent = percent
        super().__init__(
            f"Storage nearly full: {used // (1024 * 1024)}MB / "
            f"{quota // (1024 * 1024)}MB ({percent}%)"
        )


class PartialWriteFailure(ChatVaultError):
    """A write was interrupted; some records may not have been persisted."""

    def __init__(self, message: str, warning: Optional[QuotaExceeded] = None):
        super().__init__(message)
        self.warning = warning
