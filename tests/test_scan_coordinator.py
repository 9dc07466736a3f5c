"""
Unit tests for the scan coordinator.

Tests follow the Given/When/Then pattern for clarity.
"""

import copy
import json
import random

import pytest
import responses

from conftest import (
    COINGECKO_URL,
    SOLANA_RPC,
    SOLANA_RPC_BACKUP,
    TEST_MNEMONIC,
    TEST_PASSWORD,
    corrupt_table_files,
    rpc_callback,
    write_leveldb,
)
from vaultscan.lib.account_extractor import PhantomAccountExtractor
from vaultscan.lib.balance_aggregator import BaseBalanceAggregator, SolanaBalanceAggregator
from vaultscan.lib.config import EVM, SOLANA
from vaultscan.lib.errors import NetworkError, StoreOpenError
from vaultscan.lib.key_derivation import derive_hd_account
from vaultscan.lib.models import (
    CREDENTIALS_FAILED,
    CREDENTIALS_RESOLVED,
    CREDENTIALS_UNAVAILABLE,
    BalanceSnapshot,
    NativeBalance,
    NetworkBalance,
    ScanRun,
    utc_now,
)
from vaultscan.lib.price_oracle import CoinGeckoPriceOracle, PriceCache
from vaultscan.lib.profiles import BrowserProfile
from vaultscan.lib.rpc_client import RpcClient
from vaultscan.lib.scan_cache import ScanCache
from vaultscan.lib.scan_coordinator import (
    STATUS_COMPLETE,
    STATUS_INCOMPLETE,
    STATUS_NO_WALLETS_FOUND,
    ScanCoordinator,
    resolve_credentials,
)
from vaultscan.lib.vault_store import MemoryVaultStore

DEFAULT = BrowserProfile(name="Default", browser="brave", storage_path="/profiles/Default")
SECOND = BrowserProfile(name="Profile 1", browser="brave", storage_path="/profiles/Profile 1")


def make_snapshot(value, chain_family=SOLANA):
    native = NativeBalance(symbol="SOL", quantity="1" if value else "0", fiat_value=value)
    return BalanceSnapshot(
        chain_family=chain_family,
        networks=[NetworkBalance(network="solana", native=native)],
        fetched_at=utc_now(),
    )


class FakeAggregator(BaseBalanceAggregator):
    """Aggregator answering from a table of fiat values per address."""

    def __init__(self, values=None, failing=(), raising=None):
        super().__init__(SOLANA, oracle=None)
        self.values = values or {}
        self.failing = set(failing)
        self.raising = raising or {}
        self.calls = []

    @property
    def endpoint_rotations(self):
        return 0

    def aggregate(self, address):
        self.calls.append(address)
        if address in self.failing:
            raise NetworkError("HTTP error: 500", status_code=500)
        if address in self.raising:
            raise self.raising[address]
        return make_snapshot(self.values.get(address, 0.0))


def store_opener_for(vaults):
    """Open MemoryVaultStores from decoded entries keyed by profile name."""

    def opener(profile):
        if profile.name not in vaults:
            raise StoreOpenError(f"Cannot open vault store at {profile.storage_path}")
        return MemoryVaultStore({key: json.dumps(value) for key, value in vaults[profile.name].items()})

    return opener


@pytest.fixture
def three_account_entries(phantom_entries):
    """Phantom vault entries with a third HD account on the same seed."""
    entries = copy.deepcopy(phantom_entries)
    third = derive_hd_account(SOLANA, TEST_MNEMONIC, 2).address
    entries[".phantom-labs.vault.accounts"]["accounts"].append(
        {"type": "seed", "seedIdentifier": "seed-1", "derivationIndex": 2, "chains": {"solana": {"publicKey": third}}}
    )
    return entries


@pytest.fixture
def cache(tmp_path):
    return ScanCache(tmp_path / "solana_wallet_balances.json")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_coordinator(cache, sleeps):
    def factory(vaults, aggregator, **kwargs):
        return ScanCoordinator(
            PhantomAccountExtractor(SOLANA),
            aggregator,
            cache,
            browser="brave",
            store_opener=store_opener_for(vaults),
            sleep=sleeps.append,
            rng=random.Random(7),
            **kwargs,
        )

    return factory


class TestDiscovery:
    """Tests for account discovery across profiles."""

    def test_empty_vault_reports_no_wallets_and_writes_nothing(self, make_coordinator, cache):
        """
        Given a profile whose vault lists no accounts
        When running a scan
        Then the outcome should be no_wallets_found and no cache written
        """
        # Given
        aggregator = FakeAggregator()
        coordinator = make_coordinator({"Default": {}}, aggregator)

        # When
        outcome = coordinator.run([DEFAULT])

        # Then
        assert outcome.status == STATUS_NO_WALLETS_FOUND
        assert outcome.run is None
        assert not cache.exists()
        assert aggregator.calls == []

    def test_unreadable_profile_is_skipped(self, make_coordinator, phantom_entries, solana_hd_addresses):
        """
        Given one readable profile and one whose store cannot be opened
        When discovering accounts
        Then the readable profile's accounts should be returned
        """
        # Given
        coordinator = make_coordinator({"Default": phantom_entries}, FakeAggregator())

        # When
        accounts = coordinator.discover([SECOND, DEFAULT])

        # Then
        assert [a.address for a in accounts] == solana_hd_addresses
        assert {a.profile for a in accounts} == {"Default"}

    def test_corrupt_leveldb_profile_is_skipped(self, tmp_path, cache, phantom_entries, solana_hd_addresses):
        """
        Given a healthy LevelDB profile and one whose table files are damaged
        When discovering accounts with the default store opener
        Then the damaged profile should be skipped and the healthy one read
        """
        # Given
        pytest.importorskip("plyvel")
        damaged = BrowserProfile(name="Profile 1", browser="brave", storage_path=str(tmp_path / "damaged"))
        healthy = BrowserProfile(name="Default", browser="brave", storage_path=str(tmp_path / "healthy"))
        write_leveldb(damaged.storage_path, phantom_entries, padding=300)
        corrupt_table_files(damaged.storage_path)
        write_leveldb(healthy.storage_path, phantom_entries)
        coordinator = ScanCoordinator(PhantomAccountExtractor(SOLANA), FakeAggregator(), cache, browser="brave")

        # When
        accounts = coordinator.discover([damaged, healthy])

        # Then
        assert [a.address for a in accounts] == solana_hd_addresses
        assert {a.profile for a in accounts} == {"Default"}



class TestRun:
    """Tests for ScanCoordinator.run."""

    def test_fetches_every_account_and_persists(self, make_coordinator, cache, sleeps, phantom_entries,
                                                 solana_hd_addresses):
        """
        Given two accounts and no previous run
        When running a scan
        Then both should be fetched, paced once and persisted
        """
        # Given
        values = {solana_hd_addresses[0]: 10.0, solana_hd_addresses[1]: 20.0}
        aggregator = FakeAggregator(values)
        coordinator = make_coordinator({"Default": phantom_entries}, aggregator)

        # When
        outcome = coordinator.run([DEFAULT])

        # Then
        assert outcome.status == STATUS_COMPLETE
        assert (outcome.fetched, outcome.reused, outcome.failed) == (2, 0, 0)
        assert aggregator.calls == solana_hd_addresses
        assert len(sleeps) == 1
        assert 0.5 <= sleeps[0] <= 1.5
        saved = cache.load()
        assert saved.completed_count == 2
        assert saved.total_portfolio_value == 30.0

    def test_reuses_cached_snapshot_without_network_call(self, make_coordinator, cache, sleeps, phantom_entries,
                                                         solana_hd_addresses):
        """
        Given a previous run holding 50 USD for the first account
        When running a scan
        Then the first snapshot should be reused without a query or a pause
        """
        # Given
        first, second = solana_hd_addresses
        previous = make_coordinator({"Default": phantom_entries}, FakeAggregator({first: 50.0}))
        previous.run([DEFAULT])
        del sleeps[:]
        saved = cache.load()
        saved.accounts[1].snapshot = None
        cache.save(saved)
        aggregator = FakeAggregator({second: 5.0})

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT])

        # Then
        assert aggregator.calls == [second]
        assert outcome.reused == 1
        assert outcome.run.accounts[0].total_fiat_value == 50.0
        assert sleeps == []

    def test_resume_keeps_completed_prefix(self, make_coordinator, cache, phantom_entries, solana_hd_addresses):
        """
        Given an interrupted run that completed the first of two accounts
        When resuming
        Then the first snapshot and the start time should be kept unchanged
        """
        # Given
        make_coordinator({"Default": phantom_entries}, FakeAggregator()).run([DEFAULT], skip_fetch=True)
        interrupted = cache.load()
        interrupted.accounts[0].snapshot = make_snapshot(12.5)
        interrupted.scan_started_at = "2026-01-01T00:00:00+00:00"
        cache.save(interrupted)
        before = interrupted.accounts[0].snapshot.to_dict()

        # When
        outcome = make_coordinator({"Default": phantom_entries}, FakeAggregator()).run([DEFAULT])

        # Then
        assert outcome.run.accounts[0].snapshot.to_dict() == before
        assert outcome.run.scan_started_at == "2026-01-01T00:00:00+00:00"
        assert outcome.run.is_complete

    def test_skip_fetch_leaves_accounts_pending(self, make_coordinator, cache, phantom_entries):
        """
        Given no previous run
        When running with skip_fetch
        Then nothing should be fetched and the run be incomplete
        """
        # Given
        aggregator = FakeAggregator()

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT], skip_fetch=True)

        # Then
        assert outcome.status == STATUS_INCOMPLETE
        assert outcome.pending == 2
        assert aggregator.calls == []
        assert cache.load().completed_count == 0

    def test_skip_fetch_keeps_reused_snapshot_after_pending_account(self, make_coordinator, cache, phantom_entries,
                                                                    solana_hd_addresses):
        """
        Given a previous run holding a snapshot for the second account only
        When running with skip_fetch
        Then the second snapshot should be kept while the first stays pending
        """
        # Given
        make_coordinator({"Default": phantom_entries}, FakeAggregator({solana_hd_addresses[1]: 20.0})).run([DEFAULT])
        saved = cache.load()
        saved.accounts[0].snapshot = None
        cache.save(saved)
        aggregator = FakeAggregator()

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT], skip_fetch=True)

        # Then
        assert aggregator.calls == []
        assert (outcome.pending, outcome.reused) == (1, 1)
        assert outcome.status == STATUS_INCOMPLETE
        reloaded = cache.load()
        assert reloaded.accounts[0].snapshot is None
        assert reloaded.accounts[1].total_fiat_value == 20.0
        assert reloaded.completed_count == 0


    def test_force_rescan_ignores_previous_run(self, make_coordinator, phantom_entries, solana_hd_addresses):
        # Given
        make_coordinator({"Default": phantom_entries}, FakeAggregator()).run([DEFAULT])
        aggregator = FakeAggregator()

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT], force_rescan=True)

        # Then
        assert aggregator.calls == solana_hd_addresses
        assert outcome.reused == 0

    def test_cache_of_another_family_is_ignored(self, make_coordinator, cache, phantom_entries):
        """
        Given a cache written for the EVM family
        When running a Solana scan
        Then none of its snapshots should be reused
        """
        # Given
        cache.save(ScanRun(chain_family=EVM, browser="brave"))
        aggregator = FakeAggregator()

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT])

        # Then
        assert outcome.fetched == 2
        assert cache.load().chain_family == SOLANA

    def test_fetch_failure_is_recorded_on_the_account(self, make_coordinator, phantom_entries, solana_hd_addresses):
        """
        Given the aggregator fails for the first account
        When running a scan
        Then that account should carry a failed snapshot and the scan continue
        """
        # Given
        aggregator = FakeAggregator({solana_hd_addresses[1]: 7.0}, failing=[solana_hd_addresses[0]])

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT])

        # Then
        failed = outcome.run.accounts[0].snapshot
        assert failed.error == "HTTP error: 500"
        assert not failed.has_balances()
        assert outcome.failed == 1
        assert outcome.run.total_portfolio_value == 7.0
        assert outcome.status == STATUS_COMPLETE

    def test_unexpected_error_fails_only_that_account(self, make_coordinator, cache, three_account_entries):
        """
        Given three accounts where the middle one raises an unexpected error
        When running a scan
        Then the run should be persisted after each account with the error recorded
        """
        # Given
        first, middle, last = [a["chains"]["solana"]["publicKey"]
                               for a in three_account_entries[".phantom-labs.vault.accounts"]["accounts"]]
        aggregator = FakeAggregator(
            {first: 4.0, last: 6.0},
            raising={middle: AttributeError("'NoneType' object has no attribute 'get'")},
        )
        persisted = []
        coordinator = make_coordinator(
            {"Default": three_account_entries},
            aggregator,
            on_progress=lambda position, total, entry, reused: persisted.append(cache.load()),
        )

        # When
        outcome = coordinator.run([DEFAULT])

        # Then
        assert [saved.completed_count for saved in persisted] == [1, 2, 3]
        assert persisted[1].accounts[1].snapshot.error.startswith("AttributeError")
        assert persisted[1].accounts[0].total_fiat_value == 4.0
        assert aggregator.calls == [first, middle, last]
        assert (outcome.fetched, outcome.failed) == (3, 1)
        assert outcome.status == STATUS_COMPLETE
        final = cache.load()
        assert [entry.total_fiat_value for entry in final.accounts] == [4.0, 0.0, 6.0]
        assert not final.accounts[1].snapshot.has_balances()


    def test_same_address_in_two_profiles_is_fetched_once(self, make_coordinator, phantom_entries,
                                                         solana_hd_addresses):
        """
        Given two profiles listing the same accounts
        When running a scan
        Then each address should be fetched once and listed once per profile
        """
        # Given
        aggregator = FakeAggregator()
        coordinator = make_coordinator({"Default": phantom_entries, "Profile 1": phantom_entries}, aggregator)

        # When
        outcome = coordinator.run([DEFAULT, SECOND])

        # Then
        assert aggregator.calls == solana_hd_addresses
        assert len(outcome.run.accounts) == 4
        assert outcome.reused == 2

    def test_progress_callback_receives_positions(self, make_coordinator, phantom_entries):
        # Given
        progress = []
        coordinator = make_coordinator(
            {"Default": phantom_entries},
            FakeAggregator(),
            on_progress=lambda position, total, entry, reused: progress.append((position, total, reused)),
        )

        # When
        coordinator.run([DEFAULT])

        # Then
        assert progress == [(1, 2, False), (2, 2, False)]

    @responses.activate
    def test_rate_limited_endpoint_still_completes(self, make_coordinator, phantom_entries, solana_hd_addresses):
        """
        Given the primary RPC endpoint answers 429 twice for the first account
        When scanning with a real Solana aggregator
        Then every account should succeed after at least two rotations
        """
        # Given
        attempts = []

        def get_balance(params):
            attempts.append(params[0])
            if len(attempts) <= 2:
                return (429, {})
            return {"value": 1000000000}

        callback = rpc_callback({"getBalance": get_balance, "getTokenAccountsByOwner": {"value": []}})
        responses.add_callback(responses.POST, SOLANA_RPC, callback=callback)
        responses.add_callback(responses.POST, SOLANA_RPC_BACKUP, callback=callback)
        responses.add(responses.GET, f"{COINGECKO_URL}/simple/price", json={"solana": {"usd": 100}})
        aggregator = SolanaBalanceAggregator(
            RpcClient([SOLANA_RPC, SOLANA_RPC_BACKUP], sleep=lambda _: None),
            CoinGeckoPriceOracle(RpcClient([COINGECKO_URL], sleep=lambda _: None), cache=PriceCache()),
        )

        # When
        outcome = make_coordinator({"Default": phantom_entries}, aggregator).run([DEFAULT])

        # Then
        assert outcome.failed == 0
        assert outcome.run.total_portfolio_value == 200.0
        assert aggregator.endpoint_rotations >= 2
        assert attempts[:2] == [solana_hd_addresses[0], solana_hd_addresses[0]]


class TestResolveCredentials:
    """Tests for resolve_credentials function."""

    def _entries(self, make_coordinator, phantom_entries, profiles):
        vaults = {p.name: phantom_entries for p in profiles}
        outcome = make_coordinator(vaults, FakeAggregator()).run(profiles)
        return outcome.run.accounts

    def test_resolves_with_correct_password(self, make_coordinator, phantom_entries):
        # Given
        entries = self._entries(make_coordinator, phantom_entries, [DEFAULT])

        # When
        counts = resolve_credentials(
            PhantomAccountExtractor(SOLANA), [DEFAULT], entries, TEST_PASSWORD,
            store_opener=store_opener_for({"Default": phantom_entries}),
        )

        # Then
        assert counts == {CREDENTIALS_RESOLVED: 2}
        assert all(entry.credentials.seed_phrase for entry in entries)

    def test_wrong_password_leaves_accounts_listed(self, make_coordinator, phantom_entries):
        """
        Given the wrong password
        When resolving credentials
        Then every account should stay listed with a failed result and no secret
        """
        # Given
        entries = self._entries(make_coordinator, phantom_entries, [DEFAULT])

        # When
        counts = resolve_credentials(
            PhantomAccountExtractor(SOLANA), [DEFAULT], entries, "wrong",
            store_opener=store_opener_for({"Default": phantom_entries}),
        )

        # Then
        assert counts == {CREDENTIALS_FAILED: 2}
        assert len(entries) == 2
        assert all(entry.credentials.private_key is None for entry in entries)

    def test_unreadable_or_missing_profile_is_unavailable(self, make_coordinator, phantom_entries):
        """
        Given accounts from two profiles, one unreadable and one not passed in
        When resolving credentials
        Then all of them should be unavailable
        """
        # Given
        entries = self._entries(make_coordinator, phantom_entries, [DEFAULT, SECOND])

        # When
        counts = resolve_credentials(
            PhantomAccountExtractor(SOLANA), [DEFAULT], entries, TEST_PASSWORD,
            store_opener=store_opener_for({}),
        )

        # Then
        assert counts == {CREDENTIALS_UNAVAILABLE: 4}
        assert entries[2].credentials.message == "Profile not found"
