"""
Browser profile discovery.

Finds Chromium-family browser profiles ("Default", "Profile N") that have
a wallet extension's local storage directory.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .config import EXTENSION_IDS
from .errors import ProfileAccessError
from .logger import get_logger

logger = get_logger(__name__)

# User data directories relative to the home directory, per browser and platform
BROWSER_USER_DATA: Dict[str, Dict[str, str]] = {
    "brave": {
        "darwin": "Library/Application Support/BraveSoftware/Brave-Browser",
        "win32": "AppData/Local/BraveSoftware/Brave-Browser/User Data",
        "linux": ".config/BraveSoftware/Brave-Browser",
    },
    "arc": {
        "darwin": "Library/Application Support/Arc/User Data",
        "win32": "AppData/Local/Arc/User Data",
        "linux": ".config/Arc/User Data",
    },
    "chrome": {
        "darwin": "Library/Application Support/Google/Chrome",
        "win32": "AppData/Local/Google/Chrome/User Data",
        "linux": ".config/google-chrome",
    },
    "edge": {
        "darwin": "Library/Application Support/Microsoft Edge",
        "win32": "AppData/Local/Microsoft/Edge/User Data",
        "linux": ".config/microsoft-edge",
    },
}

SUPPORTED_BROWSERS = list(BROWSER_USER_DATA)


@dataclass
class BrowserProfile:
    """A browser profile with the wallet extension installed."""

    name: str
    browser: str
    storage_path: str


def _platform_key(platform_name: str) -> str:
    if platform_name.startswith("linux"):
        return "linux"
    return platform_name


def user_data_dir(browser: str, platform_name: Optional[str] = None, home: Optional[str] = None) -> Path:
    """
    Get the browser's user data directory.

    Raises:
        ValueError: If the browser or platform is not supported
    """
    if browser not in BROWSER_USER_DATA:
        raise ValueError(f"Unsupported browser: {browser}. Supported: {', '.join(SUPPORTED_BROWSERS)}")
    platform_key = _platform_key(platform_name or sys.platform)
    relative = BROWSER_USER_DATA[browser].get(platform_key)
    if relative is None:
        raise ValueError(f"Unsupported platform for {browser}: {platform_key}")
    return Path(home or os.path.expanduser("~")) / relative


def is_profile_dir(name: str) -> bool:
    return name == "Default" or name.startswith("Profile ")


def list_profiles(
    browser: str,
    wallet: str,
    platform_name: Optional[str] = None,
    home: Optional[str] = None,
) -> List[BrowserProfile]:
    """
    List profiles of a browser that contain the wallet extension's storage.

    Args:
        browser: Browser key (brave, arc, chrome, edge)
        wallet: Wallet key (phantom, metamask)
        platform_name: sys.platform style name (defaults to the running platform)
        home: Home directory (defaults to the current user's)

    Returns:
        Profiles sorted by name; empty if the browser is not installed

    Raises:
        ProfileAccessError: If the user data directory exists but cannot be listed
    """
    if wallet not in EXTENSION_IDS:
        raise ValueError(f"Unsupported wallet: {wallet}")

    base = user_data_dir(browser, platform_name, home)
    if not base.is_dir():
        logger.info("No %s user data directory at %s", browser, base)
        return []

    try:
        with os.scandir(base) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
    except OSError as e:
        raise ProfileAccessError(f"Cannot list {base}: {e}") from e

    profiles = []
    for entry in entries:
        if not entry.is_dir() or not is_profile_dir(entry.name):
            continue
        storage = Path(entry.path) / "Local Extension Settings" / EXTENSION_IDS[wallet]
        if storage.is_dir():
            profiles.append(BrowserProfile(name=entry.name, browser=browser, storage_path=str(storage)))

    return profiles
