"""
Resumable, paced balance scan over every account found in a browser.

ScanCoordinator discovers accounts across the browser profiles, reuses
snapshots from the previous run where they exist and fetches the rest one
account at a time. The run is persisted after every account so an
interrupted scan resumes where it stopped.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .account_extractor import BaseAccountExtractor
from .balance_aggregator import BaseBalanceAggregator
from .config import DEFAULT_PACING_DELAY
from .errors import ProfileAccessError, StoreOpenError, VaultScanError
from .logger import get_logger
from .models import BalanceSnapshot, CredentialResult, LogicalAccount, ScanRun, ScannedAccount, utc_now
from .profiles import BrowserProfile
from .scan_cache import ScanCache
from .vault_store import LevelDBVaultStore, VaultStore, read_vault_entries

logger = get_logger(__name__)

# Scan outcome states
STATUS_COMPLETE = "complete"
STATUS_INCOMPLETE = "incomplete"  # Accounts left pending (skip_fetch)
STATUS_NO_WALLETS_FOUND = "no_wallets_found"


@dataclass
class ScanOutcome:
    """Result of ScanCoordinator.run."""

    status: str
    run: Optional[ScanRun] = None
    fetched: int = 0
    reused: int = 0
    failed: int = 0
    pending: int = 0


def open_profile_store(profile: BrowserProfile) -> VaultStore:
    return LevelDBVaultStore(profile.storage_path)


def resolve_credentials(
    extractor: BaseAccountExtractor,
    profiles: List[BrowserProfile],
    entries: List[ScannedAccount],
    password: str,
    store_opener: Callable[[BrowserProfile], VaultStore] = open_profile_store,
) -> Dict[str, int]:
    """
    Attach a CredentialResult to each entry, reading the vault of its profile.

    Entries whose profile cannot be read (or is not among the given
    profiles) are marked unavailable.

    Returns:
        Count of entries per credential status
    """
    by_profile: Dict[str, List[ScannedAccount]] = {}
    for entry in entries:
        by_profile.setdefault(entry.account.profile, []).append(entry)

    for profile in profiles:
        group = by_profile.pop(profile.name, [])
        if not group:
            continue
        try:
            with store_opener(profile) as store:
                vault_entries = read_vault_entries(store)
        except (ProfileAccessError, StoreOpenError) as e:
            logger.warning("Cannot read profile %s for credentials: %s", profile.name, e)
            for entry in group:
                entry.credentials = CredentialResult.unavailable(str(e))
            continue

        results = extractor.resolve_credentials(vault_entries, [entry.account for entry in group], password)
        for entry in group:
            entry.credentials = results.get(entry.account.address_key) or CredentialResult.unavailable()

    for group in by_profile.values():
        for entry in group:
            entry.credentials = CredentialResult.unavailable("Profile not found")

    counts: Dict[str, int] = {}
    for entry in entries:
        counts[entry.credentials.status] = counts.get(entry.credentials.status, 0) + 1
    return counts


class ScanCoordinator:
    """
    Drives discovery and the per-account aggregation loop.

    Accounts are processed strictly in discovery order. A snapshot is
    reused when the previous run holds fetched balances for the same
    address (case-insensitive); reuse costs no network query and no delay.
    """

    def __init__(
        self,
        extractor: BaseAccountExtractor,
        aggregator: BaseBalanceAggregator,
        cache: ScanCache,
        browser: str = "",
        store_opener: Callable[[BrowserProfile], VaultStore] = open_profile_store,
        delay_range: Tuple[float, float] = DEFAULT_PACING_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        on_progress: Optional[Callable[[int, int, ScannedAccount, bool], None]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            extractor: Account extractor for the wallet and chain family
            aggregator: Balance aggregator for the chain family
            cache: Cache the run is loaded from and saved to
            browser: Browser key recorded on the run
            store_opener: Opens the vault store of a profile
            delay_range: Bounds of the randomized pause after each fresh fetch
            sleep: Sleep function, replaceable in tests
            rng: Random source for the pause
            on_progress: Called after each account with (position, total, entry, reused)
        """
        self.extractor = extractor
        self.aggregator = aggregator
        self.cache = cache
        self.browser = browser
        self.store_opener = store_opener
        self.delay_range = delay_range
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.on_progress = on_progress

    def load_entries(self, profile: BrowserProfile) -> Dict[str, Any]:
        """Read the decoded vault entries of one profile."""
        with self.store_opener(profile) as store:
            return read_vault_entries(store)

    def discover(self, profiles: List[BrowserProfile]) -> List[LogicalAccount]:
        """
        Extract the accounts of every profile, in profile order.

        Profiles whose directory or store cannot be read are logged and skipped.
        """
        accounts: List[LogicalAccount] = []
        for profile in profiles:
            try:
                entries = self.load_entries(profile)
            except (ProfileAccessError, StoreOpenError) as e:
                logger.warning("Skipping profile %s: %s", profile.name, e)
                continue

            result = self.extractor.extract(entries, profile=profile.name, browser=profile.browser)
            logger.info("Found %d account(s) in profile %s", len(result.accounts), profile.name)
            accounts.extend(result.accounts)

        return accounts

    def _previous_run(self, force_rescan: bool) -> Optional[ScanRun]:
        if force_rescan:
            return None
        previous = self.cache.load()
        if previous is not None and previous.chain_family != self.extractor.chain_family:
            logger.warning("Ignoring scan cache for chain family %s", previous.chain_family)
            return None
        return previous

    def _fetch(self, account: LogicalAccount) -> BalanceSnapshot:
        try:
            return self.aggregator.aggregate(account.address)
        except VaultScanError as e:
            logger.error("Balance fetch failed for %s: %s", account.address, e)
            return BalanceSnapshot.failed(account.chain_family, str(e))
        except Exception as e:
            # Malformed payloads fail this account only
            logger.exception("Unexpected error fetching %s", account.address)
            return BalanceSnapshot.failed(account.chain_family, f"{type(e).__name__}: {e}")

    def _pause(self) -> None:
        low, high = self.delay_range
        if high > 0:
            self.sleep(self.rng.uniform(low, high))

    def run(
        self,
        profiles: List[BrowserProfile],
        force_rescan: bool = False,
        skip_fetch: bool = False,
    ) -> ScanOutcome:
        """
        Run a scan over the given profiles.

        Args:
            profiles: Browser profiles to read
            force_rescan: Ignore snapshots from the previous run
            skip_fetch: Reuse cached snapshots only and leave the rest pending.
                A reused snapshot after a pending account is kept on the run
                but does not extend completed_count past the pending entry

        Returns:
            ScanOutcome; status is no_wallets_found (and nothing is written)
            when no profile yields an account
        """
        accounts = self.discover(profiles)
        if not accounts:
            logger.warning("No %s accounts found in %d profile(s)", self.extractor.chain_family, len(profiles))
            return ScanOutcome(status=STATUS_NO_WALLETS_FOUND)

        previous = self._previous_run(force_rescan)
        lookup = previous.snapshot_lookup() if previous else {}

        run = ScanRun(
            chain_family=self.extractor.chain_family,
            browser=self.browser,
            accounts=[ScannedAccount(account=account) for account in accounts],
        )
        if previous is not None and lookup and not previous.is_complete:
            run.scan_started_at = previous.scan_started_at

        outcome = ScanOutcome(status=STATUS_COMPLETE, run=run)
        total = len(run.accounts)

        for position, entry in enumerate(run.accounts, start=1):
            cached = lookup.get(entry.account.address_key)
            fetched = False

            if cached is not None:
                entry.snapshot = cached
                outcome.reused += 1
            elif skip_fetch:
                outcome.pending += 1
            else:
                entry.snapshot = self._fetch(entry.account)
                fetched = True
                outcome.fetched += 1
                if entry.snapshot.error:
                    outcome.failed += 1
                elif entry.snapshot.has_balances():
                    # Same address in a later profile reuses this fetch
                    lookup[entry.account.address_key] = entry.snapshot

            run.last_updated_at = utc_now()
            self.cache.save(run)

            if self.on_progress is not None:
                self.on_progress(position, total, entry, cached is not None)

            if fetched and position < total:
                self._pause()

        run.last_updated_at = utc_now()
        self.cache.save(run)

        if not run.is_complete:
            outcome.status = STATUS_INCOMPLETE
        return outcome
