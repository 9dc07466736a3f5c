"""
Error taxonomy for vault scanning.

Every error here is contained at the unit that raised it (a profile, an
account, an asset class) and recorded on the affected record. Nothing in
the library aborts a whole scan.
"""

from typing import Optional


class VaultScanError(Exception):
    """Base class for all vaultscan errors."""


class ProfileAccessError(VaultScanError):
    """Raised when a browser profile directory cannot be read."""


class StoreOpenError(VaultScanError):
    """Raised when a vault key-value store is missing, locked or corrupt."""


class InvalidSeed(VaultScanError):
    """Raised when a seed phrase fails BIP-39 wordlist or checksum validation."""


class InvalidKeyMaterial(VaultScanError):
    """Raised when a raw private key cannot be decoded for its chain family."""


class DecryptionFailed(VaultScanError):
    """Raised on a wrong password or a corrupted encrypted envelope."""


class NetworkError(VaultScanError):
    """Raised when a data source request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(NetworkError):
    """Raised when rate-limit retries (with endpoint rotation) are exhausted."""

    pass
