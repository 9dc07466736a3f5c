"""
On-disk persistence of ScanRun progress.

One JSON file per (chain family, browser) scope. Saves go through a
temporary file in the same directory followed by os.replace, so an
interrupted write never leaves a truncated cache behind.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from .config import SOLANA
from .logger import get_logger
from .models import ScanRun

logger = get_logger(__name__)


def scope_filename(prefix: str, chain_family: str, browser: Optional[str] = None) -> str:
    """
    Build a per-scope file name.

    Examples:
        scope_filename("wallet_balances", "evm", "brave") -> "wallet_balances.json"
        scope_filename("wallet_balances", "solana", "arc") -> "solana_wallet_balances_arc.json"
    """
    family_part = "solana_" if chain_family == SOLANA else ""
    browser_part = f"_{browser}" if browser and browser != "brave" else ""
    return f"{family_part}{prefix}{browser_part}.json"


def cache_path(directory: Union[str, Path], chain_family: str, browser: Optional[str] = None) -> Path:
    """Path of the scan cache for one chain family and browser."""
    return Path(directory) / scope_filename("wallet_balances", chain_family, browser)


class ScanCache:
    """Load and atomically save a ScanRun."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[ScanRun]:
        """
        Load the persisted run.

        Returns:
            The ScanRun, or None if the file is missing or unreadable
        """
        if not self.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return ScanRun.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable scan cache %s: %s", self.path, e)
            return None

    def save(self, run: ScanRun) -> None:
        """Write the run, replacing the previous file in one step."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(run.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
