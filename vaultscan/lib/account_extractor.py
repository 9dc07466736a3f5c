"""
Account extraction from decoded vault entries.

Extraction runs in two phases. extract() is a cheap pass that reads the
plaintext account listing of a vault and builds credential-free
LogicalAccounts. resolve_credentials() decrypts the secrets of selected
accounts on demand and re-derives their keys, containing every failure to
the account it belongs to.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import base58

from .config import EVM, METAMASK, PHANTOM, SOLANA
from .errors import DecryptionFailed, InvalidKeyMaterial, InvalidSeed
from .key_derivation import DerivedKey, derivation_path, derive_hd_account, import_private_key
from .logger import get_logger
from .models import (
    AccountRecord,
    CredentialResult,
    DerivationReference,
    LogicalAccount,
    ORIGIN_HD,
    ORIGIN_IMPORTED,
    PrivateKeyBackedRecord,
    SECRET_PRIVATE_KEY,
    SECRET_SEED,
    SecretReference,
    SeedBackedRecord,
)
from .vault_crypto import decrypt

logger = get_logger(__name__)

PHANTOM_ACCOUNTS_KEY = ".phantom-labs.vault.accounts"
PHANTOM_SEED_PREFIX = ".phantom-labs.vault.seed."
PHANTOM_PRIVATE_KEY_PREFIX = ".phantom-labs.vault.privateKey."

# Phantom names chains differently from our chain families
PHANTOM_CHAIN_KEYS = {SOLANA: "solana", EVM: "ethereum"}
PHANTOM_CHAIN_TYPES = {"solana": SOLANA, "ethereum": EVM, "eip155": EVM}

METAMASK_STATE_KEY = "data"
METAMASK_VAULT_FIELD = "KeyringController.vault"
METAMASK_HD_KEYRING = "HD Key Tree"
METAMASK_SIMPLE_KEYRING = "Simple Key Pair"

_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(chain_family: str, address: Any) -> bool:
    """
    Check an address against the shape rules of its chain family.

    Solana addresses are base58 strings of 32-44 characters decoding to 32
    bytes and never start with 0x. EVM addresses are 0x plus 40 hex digits.
    """
    if not isinstance(address, str):
        return False
    if chain_family == SOLANA:
        if address.startswith("0x") or not 32 <= len(address) <= 44:
            return False
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False
    if chain_family == EVM:
        return bool(_EVM_ADDRESS.match(address))
    return False


def _short(address: str) -> str:
    return f"{address[:8]}..."


@dataclass
class ExtractionResult:
    """Accounts found in one vault plus counts of what was left out."""

    accounts: List[LogicalAccount] = field(default_factory=list)
    rejected_addresses: int = 0  # Present for the target family but malformed
    skipped_records: int = 0  # Records belonging only to other chain families


class BaseAccountExtractor(ABC):
    """
    Abstract base class for wallet-specific account extractors.

    Subclasses turn the raw account listing into AccountRecords and know
    where each record's encrypted secret lives.
    """

    wallet = ""
    supported_families: Iterable[str] = ()

    def __init__(self, chain_family: str):
        if chain_family not in self.supported_families:
            raise ValueError(f"{self.wallet} does not support chain family: {chain_family}")
        self.chain_family = chain_family

    @abstractmethod
    def parse_records(self, entries: Dict[str, Any]) -> List[AccountRecord]:
        """Build the tagged account records found in the vault entries."""
        pass

    @abstractmethod
    def secret_reference(self, record: AccountRecord) -> SecretReference:
        """Locate the encrypted secret backing a record."""
        pass

    @abstractmethod
    def resolve_credentials(
        self,
        entries: Dict[str, Any],
        accounts: List[LogicalAccount],
        password: str,
    ) -> Dict[str, CredentialResult]:
        """
        Decrypt and re-derive the private material of the given accounts.

        Returns:
            Mapping of lowercase address to CredentialResult, one per account
        """
        pass

    def record_address(self, record: AccountRecord) -> Optional[str]:
        """Public address of a record for the target family, or None if it has none."""
        if isinstance(record, SeedBackedRecord):
            return record.chains.get(self.chain_family)
        if record.chain_family == self.chain_family:
            return record.address
        return None

    def _to_account(self, record: AccountRecord, address: str, profile: str, browser: str) -> LogicalAccount:
        if isinstance(record, SeedBackedRecord):
            return LogicalAccount(
                origin=ORIGIN_HD,
                chain_family=self.chain_family,
                address=address,
                secret=self.secret_reference(record),
                derivation=DerivationReference(
                    seed_identifier=record.seed_identifier,
                    index=record.derivation_index,
                    path=derivation_path(self.chain_family, record.derivation_index),
                ),
                profile=profile,
                browser=browser,
                record_index=record.record_index,
            )
        return LogicalAccount(
            origin=ORIGIN_IMPORTED,
            chain_family=self.chain_family,
            address=address,
            secret=self.secret_reference(record),
            profile=profile,
            browser=browser,
            record_index=record.record_index,
        )

    def extract(self, entries: Dict[str, Any], profile: str = "", browser: str = "") -> ExtractionResult:
        """
        Build the ordered, credential-free account list of one vault.

        Records without an entry for the target family are skipped silently.
        Entries that exist but fail the family's address rules are dropped
        and counted. An address appearing twice in the same vault is kept once.
        """
        result = ExtractionResult()
        seen = set()

        for record in self.parse_records(entries):
            address = self.record_address(record)
            if address is None:
                result.skipped_records += 1
                continue
            if not is_valid_address(self.chain_family, address):
                result.rejected_addresses += 1
                continue
            key = address.lower()
            if key in seen:
                continue
            seen.add(key)
            result.accounts.append(self._to_account(record, address, profile, browser))

        if result.rejected_addresses:
            logger.warning(
                "Dropped %d %s account(s) with malformed addresses in profile %s",
                result.rejected_addresses,
                self.chain_family,
                profile or "<unknown>",
            )
        return result


def _matches(chain_family: str, derived: DerivedKey, address: str) -> bool:
    if chain_family == EVM:
        return derived.address.lower() == address.lower()
    return derived.address == address


class PhantomAccountExtractor(BaseAccountExtractor):
    """
    Extractor for Phantom vaults.

    The account listing is stored in plaintext; every seed and imported key
    is a separately encrypted entry.
    """

    wallet = PHANTOM
    supported_families = (SOLANA, EVM)

    def parse_records(self, entries: Dict[str, Any]) -> List[AccountRecord]:
        listing = entries.get(PHANTOM_ACCOUNTS_KEY)
        raw_accounts = listing.get("accounts") if isinstance(listing, dict) else None
        if not isinstance(raw_accounts, list):
            return []

        records: List[AccountRecord] = []
        for index, raw in enumerate(raw_accounts):
            if not isinstance(raw, dict):
                continue
            account_type = raw.get("type")
            if account_type == "seed":
                chains = {}
                for family, chain_key in PHANTOM_CHAIN_KEYS.items():
                    chain = (raw.get("chains") or {}).get(chain_key)
                    if isinstance(chain, dict) and chain.get("publicKey"):
                        chains[family] = chain["publicKey"]
                records.append(
                    SeedBackedRecord(
                        record_index=index,
                        seed_identifier=raw.get("seedIdentifier"),
                        derivation_index=int(raw.get("derivationIndex") or 0),
                        chains=chains,
                    )
                )
            elif account_type == "privateKey":
                chain_type = raw.get("chainType") or ""
                records.append(
                    PrivateKeyBackedRecord(
                        record_index=index,
                        chain_family=PHANTOM_CHAIN_TYPES.get(chain_type, chain_type),
                        address=raw.get("publicKey"),
                        private_key_identifier=raw.get("privateKeyIdentifier"),
                    )
                )
        return records

    def secret_reference(self, record: AccountRecord) -> SecretReference:
        if isinstance(record, SeedBackedRecord):
            return SecretReference(
                kind=SECRET_SEED,
                store_key=f"{PHANTOM_SEED_PREFIX}{record.seed_identifier}",
                identifier=record.seed_identifier,
            )
        return SecretReference(
            kind=SECRET_PRIVATE_KEY,
            store_key=f"{PHANTOM_PRIVATE_KEY_PREFIX}{record.private_key_identifier}",
            identifier=record.private_key_identifier,
        )

    def _derive(self, account: LogicalAccount, secret: Any) -> CredentialResult:
        if account.secret.kind == SECRET_SEED:
            if not isinstance(secret, str):
                raise InvalidSeed("Decrypted seed is not a phrase")
            index = account.derivation.index if account.derivation else 0
            derived = derive_hd_account(self.chain_family, secret, index)
            seed_phrase: Optional[str] = secret
        else:
            derived = import_private_key(self.chain_family, secret)
            seed_phrase = None

        if not _matches(self.chain_family, derived, account.address):
            raise InvalidKeyMaterial("Decrypted secret does not derive the listed address")

        return CredentialResult.resolved(
            private_key=derived.private_key,
            seed_phrase=seed_phrase,
            derivation_path=derived.derivation_path,
        )

    def resolve_credentials(
        self,
        entries: Dict[str, Any],
        accounts: List[LogicalAccount],
        password: str,
    ) -> Dict[str, CredentialResult]:
        results: Dict[str, CredentialResult] = {}
        decrypted: Dict[str, Any] = {}

        for account in accounts:
            store_key = account.secret.store_key
            blob = entries.get(store_key)
            if blob is None:
                results[account.address_key] = CredentialResult.unavailable()
                continue

            try:
                if store_key not in decrypted:
                    try:
                        decrypted[store_key] = decrypt(password, blob)
                    except DecryptionFailed as e:
                        decrypted[store_key] = e
                secret = decrypted[store_key]
                if isinstance(secret, DecryptionFailed):
                    raise secret
                results[account.address_key] = self._derive(account, secret)
            except (DecryptionFailed, InvalidSeed, InvalidKeyMaterial) as e:
                logger.warning("Credentials unavailable for %s: %s", _short(account.address), type(e).__name__)
                results[account.address_key] = CredentialResult.failed(e)

        return results


def _decode_mnemonic(value: Any) -> Optional[str]:
    """MetaMask stores the phrase as a string, a byte list or a serialized Buffer."""
    if isinstance(value, dict):
        value = value.get("data")
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8")
        except (ValueError, TypeError):
            return None
    return None


class MetaMaskAccountExtractor(BaseAccountExtractor):
    """
    Extractor for MetaMask vaults.

    Addresses come from the plaintext AccountsController (or the older
    PreferencesController identities). All secrets sit in the single
    encrypted KeyringController vault. When a state has no plaintext listing
    and a password is supplied, the listing is rebuilt from the decrypted
    keyrings instead.
    """

    wallet = METAMASK
    supported_families = (EVM,)

    def __init__(self, chain_family: str = EVM, password: Optional[str] = None):
        super().__init__(chain_family)
        self.password = password

    @staticmethod
    def _state(entries: Dict[str, Any]) -> Dict[str, Any]:
        state = entries.get(METAMASK_STATE_KEY)
        return state if isinstance(state, dict) else {}

    @staticmethod
    def _vault(entries: Dict[str, Any]) -> Optional[Any]:
        keyring_controller = MetaMaskAccountExtractor._state(entries).get("KeyringController") or {}
        return keyring_controller.get("vault")

    def _decrypt_keyrings(self, entries: Dict[str, Any], password: str) -> List[Dict[str, Any]]:
        keyrings = decrypt(password, self._vault(entries))
        if not isinstance(keyrings, list):
            raise DecryptionFailed("Decrypted vault is not a keyring list")
        return [k for k in keyrings if isinstance(k, dict)]

    def parse_records(self, entries: Dict[str, Any]) -> List[AccountRecord]:
        state = self._state(entries)
        internal = ((state.get("AccountsController") or {}).get("internalAccounts") or {}).get("accounts")
        if isinstance(internal, dict) and internal:
            return self._records_from_internal_accounts(list(internal.values()))

        identities = (state.get("PreferencesController") or {}).get("identities")
        if isinstance(identities, dict) and identities:
            return [
                SeedBackedRecord(record_index=i, seed_identifier="0", derivation_index=i, chains={EVM: address})
                for i, address in enumerate(identities)
            ]

        if self.password is not None and self._vault(entries):
            try:
                return self._records_from_keyrings(self._decrypt_keyrings(entries, self.password))
            except DecryptionFailed as e:
                logger.warning("Cannot list MetaMask accounts without a readable vault: %s", e)
        return []

    def _records_from_internal_accounts(self, raw_accounts: List[Any]) -> List[AccountRecord]:
        records: List[AccountRecord] = []
        seed_ordinals: Dict[Any, int] = {}
        next_index: Dict[int, int] = {}
        imported = 0

        for position, raw in enumerate(raw_accounts):
            if not isinstance(raw, dict):
                continue
            keyring_type = ((raw.get("metadata") or {}).get("keyring") or {}).get("type")
            address = raw.get("address")

            if keyring_type == METAMASK_HD_KEYRING:
                source = (raw.get("options") or {}).get("entropySource")
                ordinal = seed_ordinals.setdefault(source, len(seed_ordinals))
                index = next_index.get(ordinal, 0)
                next_index[ordinal] = index + 1
                records.append(
                    SeedBackedRecord(
                        record_index=position,
                        seed_identifier=str(ordinal),
                        derivation_index=index,
                        chains={EVM: address},
                    )
                )
            elif keyring_type == METAMASK_SIMPLE_KEYRING:
                records.append(
                    PrivateKeyBackedRecord(
                        record_index=position,
                        chain_family=EVM,
                        address=address,
                        private_key_identifier=str(imported),
                    )
                )
                imported += 1
        return records

    def _records_from_keyrings(self, keyrings: List[Dict[str, Any]]) -> List[AccountRecord]:
        records: List[AccountRecord] = []
        hd_ordinal = 0
        imported = 0

        for keyring in keyrings:
            data = keyring.get("data") or {}
            if keyring.get("type") == METAMASK_HD_KEYRING:
                phrase = _decode_mnemonic(data.get("mnemonic"))
                if phrase is None:
                    continue
                for index in range(int(data.get("numberOfAccounts") or 1)):
                    try:
                        derived = derive_hd_account(EVM, phrase, index)
                    except InvalidSeed:
                        logger.warning("Skipping HD keyring %d with an invalid seed phrase", hd_ordinal)
                        break
                    records.append(
                        SeedBackedRecord(
                            record_index=len(records),
                            seed_identifier=str(hd_ordinal),
                            derivation_index=index,
                            chains={EVM: derived.address},
                        )
                    )
                hd_ordinal += 1
            elif keyring.get("type") == METAMASK_SIMPLE_KEYRING:
                for raw_key in data if isinstance(data, list) else []:
                    try:
                        derived = import_private_key(EVM, raw_key)
                    except InvalidKeyMaterial:
                        logger.warning("Skipping malformed imported key %d", imported)
                        imported += 1
                        continue
                    records.append(
                        PrivateKeyBackedRecord(
                            record_index=len(records),
                            chain_family=EVM,
                            address=derived.address,
                            private_key_identifier=str(imported),
                        )
                    )
                    imported += 1
        return records

    def secret_reference(self, record: AccountRecord) -> SecretReference:
        if isinstance(record, SeedBackedRecord):
            return SecretReference(kind=SECRET_SEED, store_key=METAMASK_STATE_KEY, identifier=record.seed_identifier)
        return SecretReference(
            kind=SECRET_PRIVATE_KEY,
            store_key=METAMASK_STATE_KEY,
            identifier=record.private_key_identifier,
        )

    def _credential_lookup(
        self,
        keyrings: List[Dict[str, Any]],
        accounts: List[LogicalAccount],
    ) -> Dict[str, CredentialResult]:
        """Derive every key the vault can produce for the requested accounts, keyed by address."""
        wanted_indices = {a.derivation.index for a in accounts if a.derivation is not None}
        lookup: Dict[str, CredentialResult] = {}

        for keyring in keyrings:
            data = keyring.get("data") or {}
            if keyring.get("type") == METAMASK_HD_KEYRING:
                phrase = _decode_mnemonic(data.get("mnemonic"))
                if phrase is None:
                    continue
                count = int(data.get("numberOfAccounts") or 1)
                indices = sorted(set(range(count)) | wanted_indices)
                try:
                    for index in indices:
                        derived = derive_hd_account(EVM, phrase, index)
                        lookup.setdefault(
                            derived.address.lower(),
                            CredentialResult.resolved(
                                private_key=derived.private_key,
                                seed_phrase=phrase,
                                derivation_path=derived.derivation_path,
                            ),
                        )
                except InvalidSeed as e:
                    logger.warning("HD keyring holds an invalid seed phrase: %s", e)
            elif keyring.get("type") == METAMASK_SIMPLE_KEYRING:
                for raw_key in data if isinstance(data, list) else []:
                    try:
                        derived = import_private_key(EVM, raw_key)
                    except InvalidKeyMaterial:
                        continue
                    lookup.setdefault(derived.address.lower(), CredentialResult.resolved(private_key=derived.private_key))
        return lookup

    def resolve_credentials(
        self,
        entries: Dict[str, Any],
        accounts: List[LogicalAccount],
        password: str,
    ) -> Dict[str, CredentialResult]:
        if not self._vault(entries):
            return {a.address_key: CredentialResult.unavailable() for a in accounts}

        try:
            keyrings = self._decrypt_keyrings(entries, password)
        except DecryptionFailed as e:
            logger.warning("MetaMask vault could not be decrypted")
            return {a.address_key: CredentialResult.failed(e) for a in accounts}

        lookup = self._credential_lookup(keyrings, accounts)
        results: Dict[str, CredentialResult] = {}
        for account in accounts:
            result = lookup.get(account.address_key)
            if result is None:
                result = CredentialResult.failed(
                    InvalidKeyMaterial("No key in the vault derives this address")
                )
            results[account.address_key] = result
        return results


def create_extractor(wallet: str, chain_family: str, password: Optional[str] = None) -> BaseAccountExtractor:
    """
    Factory function to create the extractor for a wallet.

    Args:
        wallet: Wallet key (phantom, metamask)
        chain_family: Target chain family
        password: Lets MetaMask rebuild a missing plaintext listing from the vault

    Returns:
        Extractor instance

    Raises:
        ValueError: If the wallet or family is not supported
    """
    if wallet == PHANTOM:
        return PhantomAccountExtractor(chain_family)
    elif wallet == METAMASK:
        return MetaMaskAccountExtractor(chain_family, password=password)
    else:
        raise ValueError(f"Unsupported wallet: {wallet}")
