"""
Data models for vault scanning.

This module defines the account records read from wallet vaults, the
credential-free LogicalAccount the pipeline operates on, the per-address
BalanceSnapshot and the resumable ScanRun persisted between runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union


# Account origins
ORIGIN_HD = "hd"
ORIGIN_IMPORTED = "imported"

# Secret kinds
SECRET_SEED = "seed"
SECRET_PRIVATE_KEY = "private_key"

# Credential resolution states
CREDENTIALS_RESOLVED = "resolved"
CREDENTIALS_UNAVAILABLE = "unavailable"
CREDENTIALS_FAILED = "failed"

# CSV column order for holdings output
CSV_COLUMNS = [
    "address",
    "network",
    "asset_type",
    "symbol",
    "name",
    "asset_address",
    "quantity",
    "fiat_value",
]


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def is_positive(quantity: Optional[str]) -> bool:
    """True if a decimal quantity string is greater than zero."""
    if not quantity:
        return False
    try:
        return Decimal(quantity) > 0
    except InvalidOperation:
        return False


@dataclass
class SeedBackedRecord:
    """Vault account derived from a seed phrase; chains maps chain key to public address."""

    record_index: int
    seed_identifier: Optional[str]
    derivation_index: int
    chains: Dict[str, str]


@dataclass
class PrivateKeyBackedRecord:
    """Vault account backed by an individually imported private key."""

    record_index: int
    chain_family: str
    address: str
    private_key_identifier: Optional[str]


AccountRecord = Union[SeedBackedRecord, PrivateKeyBackedRecord]


@dataclass
class DerivationReference:
    """Seed identifier plus the zero-based derivation index of an HD account."""

    seed_identifier: Optional[str]
    index: int
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"seed_identifier": self.seed_identifier, "index": self.index, "path": self.path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DerivationReference":
        return cls(
            seed_identifier=data.get("seed_identifier"),
            index=int(data.get("index", 0)),
            path=data.get("path", ""),
        )


@dataclass
class SecretReference:
    """Locates the still-encrypted secret of an account inside its vault."""

    kind: str  # SECRET_SEED or SECRET_PRIVATE_KEY
    store_key: str
    identifier: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "store_key": self.store_key, "identifier": self.identifier}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecretReference":
        return cls(
            kind=data.get("kind", ""),
            store_key=data.get("store_key", ""),
            identifier=data.get("identifier"),
        )


@dataclass
class LogicalAccount:
    """
    Canonical account unit of the pipeline.

    Produced by the cheap extraction pass and never carries private
    material; credentials are resolved separately into a CredentialResult.
    """

    origin: str  # ORIGIN_HD or ORIGIN_IMPORTED
    chain_family: str
    address: str
    secret: SecretReference
    derivation: Optional[DerivationReference] = None
    profile: str = ""
    browser: str = ""
    record_index: int = 0

    @property
    def address_key(self) -> str:
        """Case-insensitive lookup key for the address."""
        return self.address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin": self.origin,
            "chain_family": self.chain_family,
            "address": self.address,
            "profile": self.profile,
            "browser": self.browser,
            "record_index": self.record_index,
            "derivation": self.derivation.to_dict() if self.derivation else None,
            "secret": self.secret.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogicalAccount":
        derivation = data.get("derivation")
        return cls(
            origin=data.get("origin", ORIGIN_IMPORTED),
            chain_family=data.get("chain_family", ""),
            address=data.get("address", ""),
            secret=SecretReference.from_dict(data.get("secret") or {}),
            derivation=DerivationReference.from_dict(derivation) if derivation else None,
            profile=data.get("profile", ""),
            browser=data.get("browser", ""),
            record_index=int(data.get("record_index", 0)),
        )


@dataclass
class CredentialResult:
    """Outcome of resolving the private material of one account."""

    status: str
    seed_phrase: Optional[str] = None
    private_key: Optional[str] = None
    derivation_path: Optional[str] = None
    error: Optional[str] = None  # Error class name when status is failed
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CREDENTIALS_RESOLVED

    @classmethod
    def resolved(
        cls,
        private_key: str,
        seed_phrase: Optional[str] = None,
        derivation_path: Optional[str] = None,
    ) -> "CredentialResult":
        return cls(
            status=CREDENTIALS_RESOLVED,
            seed_phrase=seed_phrase,
            private_key=private_key,
            derivation_path=derivation_path,
        )

    @classmethod
    def unavailable(cls, message: str = "Encrypted secret not found") -> "CredentialResult":
        return cls(status=CREDENTIALS_UNAVAILABLE, message=message)

    @classmethod
    def failed(cls, exc: Exception) -> "CredentialResult":
        return cls(status=CREDENTIALS_FAILED, error=type(exc).__name__, message=str(exc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "seed_phrase": self.seed_phrase,
            "private_key": self.private_key,
            "derivation_path": self.derivation_path,
            "error": self.error,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialResult":
        return cls(
            status=data.get("status", CREDENTIALS_UNAVAILABLE),
            seed_phrase=data.get("seed_phrase"),
            private_key=data.get("private_key"),
            derivation_path=data.get("derivation_path"),
            error=data.get("error"),
            message=data.get("message"),
        )


@dataclass
class NativeBalance:
    """Native coin balance of one network."""

    symbol: str
    quantity: str = "0"  # Full precision, trailing zeros trimmed
    fiat_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "quantity": self.quantity, "fiat_value": self.fiat_value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NativeBalance":
        return cls(
            symbol=data.get("symbol", ""),
            quantity=str(data.get("quantity", "0")),
            fiat_value=float(data.get("fiat_value") or 0.0),
        )


@dataclass
class TokenHolding:
    """Fungible token balance (ERC-20 contract or SPL mint)."""

    contract: str
    symbol: str
    name: str
    quantity: str
    decimals: Optional[int] = None
    price: Optional[float] = None
    fiat_value: Optional[float] = None  # None when the token is unpriced

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract": self.contract,
            "symbol": self.symbol,
            "name": self.name,
            "quantity": self.quantity,
            "decimals": self.decimals,
            "price": self.price,
            "fiat_value": self.fiat_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenHolding":
        return cls(
            contract=data.get("contract", ""),
            symbol=data.get("symbol", ""),
            name=data.get("name", ""),
            quantity=str(data.get("quantity", "0")),
            decimals=data.get("decimals"),
            price=data.get("price"),
            fiat_value=data.get("fiat_value"),
        )


@dataclass
class CollectionHolding:
    """Collectibles held from one collection."""

    name: str
    count: int
    contract: Optional[str] = None
    symbol: Optional[str] = None
    members: List[str] = field(default_factory=list)  # Mint addresses or token ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "contract": self.contract,
            "symbol": self.symbol,
            "members": list(self.members),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionHolding":
        return cls(
            name=data.get("name", ""),
            count=int(data.get("count", 0)),
            contract=data.get("contract"),
            symbol=data.get("symbol"),
            members=list(data.get("members") or []),
        )


@dataclass
class NetworkBalance:
    """
    Holdings of one address on one network.

    A failing asset class leaves its list empty and sets partial; entries
    beyond the enumeration cap are counted in the *_omitted fields.
    """

    network: str
    native: NativeBalance
    tokens: List[TokenHolding] = field(default_factory=list)
    collectibles: List[CollectionHolding] = field(default_factory=list)
    tokens_omitted: int = 0
    collectibles_omitted: int = 0
    partial: bool = False
    pricing_approximate: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def fiat_value(self) -> float:
        return self.native.fiat_value + sum(t.fiat_value or 0.0 for t in self.tokens)

    def has_holdings(self) -> bool:
        return (
            is_positive(self.native.quantity)
            or any(is_positive(t.quantity) for t in self.tokens)
            or any(c.count > 0 for c in self.collectibles)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "native": self.native.to_dict(),
            "tokens": [t.to_dict() for t in self.tokens],
            "collectibles": [c.to_dict() for c in self.collectibles],
            "tokens_omitted": self.tokens_omitted,
            "collectibles_omitted": self.collectibles_omitted,
            "partial": self.partial,
            "pricing_approximate": self.pricing_approximate,
            "errors": list(self.errors),
            "fiat_value": self.fiat_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkBalance":
        return cls(
            network=data.get("network", ""),
            native=NativeBalance.from_dict(data.get("native") or {}),
            tokens=[TokenHolding.from_dict(t) for t in data.get("tokens") or []],
            collectibles=[CollectionHolding.from_dict(c) for c in data.get("collectibles") or []],
            tokens_omitted=int(data.get("tokens_omitted", 0)),
            collectibles_omitted=int(data.get("collectibles_omitted", 0)),
            partial=bool(data.get("partial", False)),
            pricing_approximate=bool(data.get("pricing_approximate", False)),
            errors=list(data.get("errors") or []),
        )


@dataclass
class BalanceSnapshot:
    """
    Valued holdings of one address.

    An EVM address spans several networks, a Solana address exactly one.
    total_fiat_value is always computed from the networks.
    """

    chain_family: str
    networks: List[NetworkBalance] = field(default_factory=list)
    fetched_at: str = ""
    error: Optional[str] = None

    @property
    def total_fiat_value(self) -> float:
        return sum(n.fiat_value for n in self.networks)

    @property
    def partial(self) -> bool:
        return any(n.partial for n in self.networks)

    @property
    def pricing_approximate(self) -> bool:
        return any(n.pricing_approximate for n in self.networks)

    def has_balances(self) -> bool:
        """True if balance data was fetched (the snapshot may still be all zero)."""
        return bool(self.networks)

    @classmethod
    def failed(cls, chain_family: str, error: str) -> "BalanceSnapshot":
        """Zero-balance snapshot annotated with the error that prevented fetching."""
        return cls(chain_family=chain_family, networks=[], fetched_at=utc_now(), error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_family": self.chain_family,
            "fetched_at": self.fetched_at,
            "error": self.error,
            "networks": [n.to_dict() for n in self.networks],
            "total_fiat_value": self.total_fiat_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BalanceSnapshot":
        return cls(
            chain_family=data.get("chain_family", ""),
            networks=[NetworkBalance.from_dict(n) for n in data.get("networks") or []],
            fetched_at=data.get("fetched_at", ""),
            error=data.get("error"),
        )


@dataclass
class ScannedAccount:
    """A LogicalAccount paired with its snapshot (None while pending)."""

    account: LogicalAccount
    snapshot: Optional[BalanceSnapshot] = None
    credentials: Optional[CredentialResult] = None

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def total_fiat_value(self) -> float:
        return self.snapshot.total_fiat_value if self.snapshot else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = self.account.to_dict()
        data["balances"] = self.snapshot.to_dict() if self.snapshot else None
        data["total_fiat_value"] = self.total_fiat_value
        if self.credentials is not None:
            data["credentials"] = self.credentials.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScannedAccount":
        balances = data.get("balances")
        credentials = data.get("credentials")
        return cls(
            account=LogicalAccount.from_dict(data),
            snapshot=BalanceSnapshot.from_dict(balances) if balances else None,
            credentials=CredentialResult.from_dict(credentials) if credentials else None,
        )


@dataclass
class ScanRun:
    """
    Resumable record of one balance-aggregation pass.

    Accounts are kept in discovery order. The leading completed_count
    accounts carry a snapshot; the rest are pending.
    """

    chain_family: str
    browser: str
    scan_started_at: str = field(default_factory=utc_now)
    last_updated_at: str = field(default_factory=utc_now)
    accounts: List[ScannedAccount] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        count = 0
        for entry in self.accounts:
            if entry.snapshot is None:
                break
            count += 1
        return count

    @property
    def total_portfolio_value(self) -> float:
        return sum(entry.total_fiat_value for entry in self.accounts)

    @property
    def is_complete(self) -> bool:
        return self.completed_count == len(self.accounts)

    def snapshot_lookup(self) -> Dict[str, BalanceSnapshot]:
        """Map lowercase address to snapshot for every account with fetched balances."""
        lookup: Dict[str, BalanceSnapshot] = {}
        for entry in self.accounts:
            if entry.snapshot is not None and entry.snapshot.has_balances():
                lookup.setdefault(entry.account.address_key, entry.snapshot)
        return lookup

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_family": self.chain_family,
            "browser": self.browser,
            "scan_started_at": self.scan_started_at,
            "last_updated_at": self.last_updated_at,
            "total_accounts": len(self.accounts),
            "completed_count": self.completed_count,
            "total_portfolio_value": self.total_portfolio_value,
            "accounts": [entry.to_dict() for entry in self.accounts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanRun":
        return cls(
            chain_family=data.get("chain_family", ""),
            browser=data.get("browser", ""),
            scan_started_at=data.get("scan_started_at", ""),
            last_updated_at=data.get("last_updated_at", ""),
            accounts=[ScannedAccount.from_dict(a) for a in data.get("accounts") or []],
        )
