"""
Unit tests for account extraction and credential resolution.

Tests follow the Given/When/Then pattern for clarity.
"""

import pytest

from conftest import (
    TEST_EVM_ADDRESS_0,
    TEST_EVM_ADDRESS_1,
    TEST_EVM_KEY_0,
    TEST_MNEMONIC,
    TEST_PASSWORD,
    encrypt_payload,
)
from vaultscan.lib.account_extractor import (
    MetaMaskAccountExtractor,
    PhantomAccountExtractor,
    create_extractor,
    is_valid_address,
)
from vaultscan.lib.config import EVM, METAMASK, PHANTOM, SOLANA
from vaultscan.lib.key_derivation import import_private_key
from vaultscan.lib.models import (
    CREDENTIALS_FAILED,
    CREDENTIALS_RESOLVED,
    CREDENTIALS_UNAVAILABLE,
    ORIGIN_HD,
    ORIGIN_IMPORTED,
    SECRET_PRIVATE_KEY,
)

OTHER_KEY = "0x" + "11" * 32


class TestIsValidAddress:
    """Tests for is_valid_address function."""

    def test_accepts_well_formed_addresses(self, sample_solana_address):
        assert is_valid_address(SOLANA, sample_solana_address)
        assert is_valid_address(EVM, TEST_EVM_ADDRESS_0)
        assert is_valid_address(EVM, TEST_EVM_ADDRESS_0.lower())

    @pytest.mark.parametrize(
        "chain_family,address",
        [
            (SOLANA, "0x" + "a" * 40),
            (SOLANA, "short"),
            (SOLANA, "0OIl" * 10),
            (EVM, "0x1234"),
            (EVM, "GKvqsuNcnwWqPzzuhLmGi4rzzh55FhJtGizkhHaEJqiV"),
            (EVM, None),
        ],
    )
    def test_rejects_malformed_addresses(self, chain_family, address):
        """
        Given an address breaking its family's shape rules
        When validating it
        Then it should be rejected
        """
        assert not is_valid_address(chain_family, address)


class TestPhantomExtraction:
    """Tests for PhantomAccountExtractor.extract."""

    def test_extracts_seed_accounts_in_order(self, phantom_entries, solana_hd_addresses):
        """
        Given a Phantom vault with two seed accounts
        When extracting Solana accounts
        Then both should be listed in order with their derivation references
        """
        # Given
        extractor = PhantomAccountExtractor(SOLANA)

        # When
        result = extractor.extract(phantom_entries, profile="Default", browser="brave")

        # Then
        assert [a.address for a in result.accounts] == solana_hd_addresses
        first = result.accounts[0]
        assert first.origin == ORIGIN_HD
        assert first.profile == "Default"
        assert first.derivation.seed_identifier == "seed-1"
        assert first.derivation.path == "m/44'/501'/0'/0'"
        assert first.secret.store_key == ".phantom-labs.vault.seed.seed-1"
        assert result.accounts[1].derivation.index == 1

    def test_extracts_evm_chain_of_seed_accounts(self, phantom_entries):
        """
        Given seed accounts listing both Solana and Ethereum addresses
        When extracting EVM accounts
        Then the Ethereum addresses should be used
        """
        # When
        result = PhantomAccountExtractor(EVM).extract(phantom_entries)

        # Then
        assert [a.address for a in result.accounts] == [TEST_EVM_ADDRESS_0, TEST_EVM_ADDRESS_1]
        assert result.accounts[0].derivation.path == "m/44'/60'/0'/0/0"

    def test_extraction_is_idempotent(self, phantom_entries):
        """
        Given the same vault entries
        When extracting twice
        Then the results should be identical
        """
        # Given
        extractor = PhantomAccountExtractor(SOLANA)

        # When
        first = extractor.extract(phantom_entries, "Default", "brave")
        second = extractor.extract(phantom_entries, "Default", "brave")

        # Then
        assert [a.to_dict() for a in first.accounts] == [a.to_dict() for a in second.accounts]

    def test_counts_malformed_and_skips_other_families(self, phantom_entries):
        """
        Given a record with a malformed Solana address and an Ethereum-only record
        When extracting Solana accounts
        Then the malformed one should be counted and the other skipped
        """
        # Given
        accounts = phantom_entries[".phantom-labs.vault.accounts"]["accounts"]
        accounts.append({"type": "seed", "seedIdentifier": "seed-1", "derivationIndex": 5,
                         "chains": {"solana": {"publicKey": "0xdeadbeef"}}})
        accounts.append({"type": "seed", "seedIdentifier": "seed-1", "derivationIndex": 6,
                         "chains": {"ethereum": {"publicKey": TEST_EVM_ADDRESS_0}}})

        # When
        result = PhantomAccountExtractor(SOLANA).extract(phantom_entries)

        # Then
        assert len(result.accounts) == 2
        assert result.rejected_addresses == 1
        assert result.skipped_records == 1

    def test_duplicate_address_in_one_vault_kept_once(self, phantom_entries):
        """
        Given the same account listed twice
        When extracting
        Then it should appear once
        """
        # Given
        accounts = phantom_entries[".phantom-labs.vault.accounts"]["accounts"]
        accounts.append(dict(accounts[0]))

        # When
        result = PhantomAccountExtractor(SOLANA).extract(phantom_entries)

        # Then
        assert len(result.accounts) == 2

    def test_missing_listing_yields_no_accounts(self):
        """
        Given an empty vault
        When extracting
        Then no accounts should be returned
        """
        assert PhantomAccountExtractor(SOLANA).extract({}).accounts == []


class TestPhantomCredentials:
    """Tests for PhantomAccountExtractor.resolve_credentials."""

    def test_resolves_seed_accounts(self, phantom_entries, solana_hd_addresses):
        """
        Given a vault whose seed is encrypted with the password
        When resolving credentials
        Then every account should carry the seed phrase and its private key
        """
        # Given
        extractor = PhantomAccountExtractor(SOLANA)
        accounts = extractor.extract(phantom_entries).accounts

        # When
        results = extractor.resolve_credentials(phantom_entries, accounts, TEST_PASSWORD)

        # Then
        second = results[solana_hd_addresses[1].lower()]
        assert second.status == CREDENTIALS_RESOLVED
        assert second.seed_phrase == TEST_MNEMONIC
        assert second.derivation_path == "m/44'/501'/1'/0'"
        assert second.private_key

    def test_resolves_evm_seed_account_key(self, phantom_entries):
        """
        Given EVM accounts of the test mnemonic
        When resolving credentials
        Then the known private key should be derived for index 0
        """
        # Given
        extractor = PhantomAccountExtractor(EVM)
        accounts = extractor.extract(phantom_entries).accounts

        # When
        results = extractor.resolve_credentials(phantom_entries, accounts, TEST_PASSWORD)

        # Then
        assert results[TEST_EVM_ADDRESS_0.lower()].private_key == TEST_EVM_KEY_0

    def test_wrong_password_keeps_every_account_listed(self, phantom_entries):
        """
        Given the wrong password
        When resolving credentials
        Then every account should get a failed result naming DecryptionFailed
        """
        # Given
        extractor = PhantomAccountExtractor(SOLANA)
        accounts = extractor.extract(phantom_entries).accounts

        # When
        results = extractor.resolve_credentials(phantom_entries, accounts, "not the password")

        # Then
        assert len(results) == 2
        for result in results.values():
            assert result.status == CREDENTIALS_FAILED
            assert result.error == "DecryptionFailed"
            assert result.private_key is None
            assert result.seed_phrase is None

    def test_missing_secret_is_unavailable(self, phantom_entries):
        """
        Given the encrypted seed entry is absent
        When resolving credentials
        Then the accounts should be marked unavailable
        """
        # Given
        extractor = PhantomAccountExtractor(SOLANA)
        accounts = extractor.extract(phantom_entries).accounts
        del phantom_entries[".phantom-labs.vault.seed.seed-1"]

        # When
        results = extractor.resolve_credentials(phantom_entries, accounts, TEST_PASSWORD)

        # Then
        assert {r.status for r in results.values()} == {CREDENTIALS_UNAVAILABLE}

    def test_resolves_imported_private_key(self):
        """
        Given an imported EVM key stored under its own encrypted entry
        When extracting and resolving
        Then the account should be imported and resolve without a seed phrase
        """
        # Given
        entries = {
            ".phantom-labs.vault.accounts": {
                "accounts": [
                    {
                        "type": "privateKey",
                        "chainType": "ethereum",
                        "publicKey": TEST_EVM_ADDRESS_0,
                        "privateKeyIdentifier": "pk-1",
                    }
                ]
            },
            ".phantom-labs.vault.privateKey.pk-1": encrypt_payload(TEST_PASSWORD, TEST_EVM_KEY_0[2:]),
        }
        extractor = PhantomAccountExtractor(EVM)

        # When
        accounts = extractor.extract(entries).accounts
        results = extractor.resolve_credentials(entries, accounts, TEST_PASSWORD)

        # Then
        assert accounts[0].origin == ORIGIN_IMPORTED
        assert accounts[0].secret.kind == SECRET_PRIVATE_KEY
        assert accounts[0].derivation is None
        result = results[TEST_EVM_ADDRESS_0.lower()]
        assert result.private_key == TEST_EVM_KEY_0
        assert result.seed_phrase is None

    def test_secret_not_matching_address_fails(self):
        """
        Given an imported key that derives a different address
        When resolving
        Then the account should fail with InvalidKeyMaterial
        """
        # Given
        entries = {
            ".phantom-labs.vault.accounts": {
                "accounts": [
                    {"type": "privateKey", "chainType": "eip155", "publicKey": TEST_EVM_ADDRESS_1,
                     "privateKeyIdentifier": "pk-1"}
                ]
            },
            ".phantom-labs.vault.privateKey.pk-1": encrypt_payload(TEST_PASSWORD, TEST_EVM_KEY_0),
        }
        extractor = PhantomAccountExtractor(EVM)
        accounts = extractor.extract(entries).accounts

        # When
        results = extractor.resolve_credentials(entries, accounts, TEST_PASSWORD)

        # Then
        assert results[TEST_EVM_ADDRESS_1.lower()].error == "InvalidKeyMaterial"


class TestMetaMaskExtraction:
    """Tests for MetaMaskAccountExtractor."""

    def test_extracts_internal_accounts(self, metamask_entries):
        """
        Given a MetaMask state with two HD accounts
        When extracting
        Then both should be listed with sequential derivation indices
        """
        # When
        result = MetaMaskAccountExtractor().extract(metamask_entries, "Default", "brave")

        # Then
        assert [a.address for a in result.accounts] == [TEST_EVM_ADDRESS_0.lower(), TEST_EVM_ADDRESS_1.lower()]
        assert [a.derivation.index for a in result.accounts] == [0, 1]
        assert result.accounts[0].derivation.seed_identifier == "0"

    def test_resolves_credentials(self, metamask_entries):
        """
        Given the correct password
        When resolving credentials
        Then each account should resolve to the mnemonic and its key
        """
        # Given
        extractor = MetaMaskAccountExtractor()
        accounts = extractor.extract(metamask_entries).accounts

        # When
        results = extractor.resolve_credentials(metamask_entries, accounts, TEST_PASSWORD)

        # Then
        first = results[TEST_EVM_ADDRESS_0.lower()]
        assert first.private_key == TEST_EVM_KEY_0
        assert first.seed_phrase == TEST_MNEMONIC
        assert results[TEST_EVM_ADDRESS_1.lower()].derivation_path == "m/44'/60'/0'/0/1"

    def test_wrong_password_fails_every_account(self, metamask_entries):
        """
        Given the wrong password
        When resolving credentials
        Then every account should fail with DecryptionFailed
        """
        # Given
        extractor = MetaMaskAccountExtractor()
        accounts = extractor.extract(metamask_entries).accounts

        # When
        results = extractor.resolve_credentials(metamask_entries, accounts, "nope")

        # Then
        assert [r.error for r in results.values()] == ["DecryptionFailed", "DecryptionFailed"]

    def test_rebuilds_listing_from_vault_with_password(self, metamask_entries):
        """
        Given a state without a plaintext listing and a vault with an imported key
        When extracting with the password
        Then accounts should be rebuilt from the decrypted keyrings
        """
        # Given
        metamask_entries["data"]["KeyringController"]["vault"] = encrypt_payload(
            TEST_PASSWORD,
            [
                {"type": "HD Key Tree", "data": {"mnemonic": list(TEST_MNEMONIC.encode()), "numberOfAccounts": 1}},
                {"type": "Simple Key Pair", "data": [OTHER_KEY]},
            ],
        )
        del metamask_entries["data"]["AccountsController"]
        imported_address = import_private_key(EVM, OTHER_KEY).address

        # When
        result = MetaMaskAccountExtractor(password=TEST_PASSWORD).extract(metamask_entries)

        # Then
        assert [a.address for a in result.accounts] == [TEST_EVM_ADDRESS_0, imported_address]
        assert [a.origin for a in result.accounts] == [ORIGIN_HD, ORIGIN_IMPORTED]

    def test_no_listing_without_password_yields_nothing(self, metamask_entries):
        """
        Given a state without a plaintext listing
        When extracting without a password
        Then no accounts should be returned
        """
        # Given
        del metamask_entries["data"]["AccountsController"]

        # When / Then
        assert MetaMaskAccountExtractor().extract(metamask_entries).accounts == []

    def test_falls_back_to_preferences_identities(self):
        """
        Given an older state listing identities only
        When extracting
        Then the identities should be listed as HD accounts
        """
        # Given
        entries = {"data": {"PreferencesController": {"identities": {TEST_EVM_ADDRESS_0: {"name": "Account 1"}}}}}

        # When
        result = MetaMaskAccountExtractor().extract(entries)

        # Then
        assert [a.address for a in result.accounts] == [TEST_EVM_ADDRESS_0]
        assert result.accounts[0].origin == ORIGIN_HD


class TestCreateExtractor:
    """Tests for create_extractor factory function."""

    def test_creates_wallet_extractors(self):
        assert isinstance(create_extractor(PHANTOM, SOLANA), PhantomAccountExtractor)
        assert isinstance(create_extractor(METAMASK, EVM), MetaMaskAccountExtractor)

    def test_rejects_unsupported_combinations(self):
        """
        Given MetaMask with Solana, or an unknown wallet
        When creating an extractor
        Then a ValueError should be raised
        """
        with pytest.raises(ValueError):
            create_extractor(METAMASK, SOLANA)
        with pytest.raises(ValueError, match="Unsupported wallet"):
            create_extractor("trust", EVM)
