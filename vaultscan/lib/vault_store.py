"""
Key-value stores holding extension vault data.

Chromium keeps extension storage in a LevelDB directory. VaultStore defines
the reader interface the extractors consume; LevelDBVaultStore implements it
with plyvel and MemoryVaultStore serves entries already held in memory (for
example a vault dump).
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from .errors import StoreOpenError
from .logger import get_logger

logger = get_logger(__name__)


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


class VaultStore(ABC):
    """Read-only key-value store interface."""

    @abstractmethod
    def open(self) -> None:
        """Open the store. Raises StoreOpenError if it cannot be read."""
        pass

    @abstractmethod
    def get(self, key: Union[str, bytes]) -> Optional[bytes]:
        """Return the raw value of a key, or None if absent."""
        pass

    @abstractmethod
    def iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        """Yield every (key, value) pair."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "VaultStore":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LevelDBVaultStore(VaultStore):
    """LevelDB directory reader backed by plyvel."""

    def __init__(self, path: str):
        self.path = str(path)
        self._db = None

    def open(self) -> None:
        import plyvel

        try:
            self._db = plyvel.DB(self.path, create_if_missing=False)
        except (plyvel.Error, OSError) as e:
            raise StoreOpenError(f"Cannot open vault store at {self.path}: {e}") from e

    def _require_open(self):
        if self._db is None:
            raise StoreOpenError(f"Vault store at {self.path} is not open")
        return self._db

    def get(self, key: Union[str, bytes]) -> Optional[bytes]:
        import plyvel

        db = self._require_open()
        try:
            return db.get(_to_bytes(key), verify_checksums=True)
        except plyvel.Error as e:
            raise StoreOpenError(f"Cannot read vault store at {self.path}: {e}") from e

    def iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        """Yield every pair; a corrupt block raises StoreOpenError."""
        import plyvel

        db = self._require_open()
        try:
            for key, value in db.iterator(verify_checksums=True):
                yield key, value
        except plyvel.Error as e:
            raise StoreOpenError(f"Cannot read vault store at {self.path}: {e}") from e

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None


class MemoryVaultStore(VaultStore):
    """Store over an in-memory mapping of keys to raw values."""

    def __init__(self, entries: Mapping[Union[str, bytes], Union[str, bytes]]):
        self._entries = {_to_bytes(k): _to_bytes(v) for k, v in entries.items()}

    def open(self) -> None:
        pass

    def get(self, key: Union[str, bytes]) -> Optional[bytes]:
        return self._entries.get(_to_bytes(key))

    def iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        yield from self._entries.items()

    def close(self) -> None:
        pass


def decode_value(raw: bytes) -> Any:
    """
    Decode a stored value as JSON.

    Raises:
        ValueError: If the value is not UTF-8 JSON
    """
    return json.loads(raw.decode("utf-8"))


def read_vault_entries(store: VaultStore) -> Dict[str, Any]:
    """
    Read every JSON-decodable entry of an open store.

    Values that are not UTF-8 JSON are skipped as noise.

    Args:
        store: An open VaultStore

    Returns:
        Mapping of key string to decoded value
    """
    entries: Dict[str, Any] = {}
    skipped = 0

    for raw_key, raw_value in store.iterate():
        try:
            key = raw_key.decode("utf-8")
            entries[key] = decode_value(raw_value)
        except ValueError:
            skipped += 1

    if skipped:
        logger.debug("Skipped %d undecodable vault entries", skipped)
    return entries
