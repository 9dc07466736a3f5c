"""
Balance aggregators for fetching the holdings of one address.

This module provides chain-family specific aggregators that query the
native balance, fungible tokens and collectibles of an address, value
them through the price oracle and return a BalanceSnapshot. Each asset
class is queried on its own: a failing class leaves its list empty and
marks the network partial instead of failing the whole snapshot.
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_bytes, to_checksum_address

from .config import (
    EVM,
    EVM_NETWORKS,
    KNOWN_SPL_TOKENS,
    MAX_COLLECTIONS,
    MAX_TOKEN_CONTRACTS,
    SOLANA,
    SOLANA_NATIVE,
    ScanSettings,
)
from .errors import NetworkError
from .logger import get_logger
from .models import (
    BalanceSnapshot,
    CollectionHolding,
    NativeBalance,
    NetworkBalance,
    TokenHolding,
    utc_now,
)
from .price_oracle import CoinGeckoPriceOracle, PriceCache
from .rpc_client import RpcClient

logger = get_logger(__name__)

SPL_TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SOLANA_COLLECTIBLE_PLACEHOLDER = "NFT"

BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
DECIMALS = function_signature_to_4byte_selector("decimals()")
SYMBOL = function_signature_to_4byte_selector("symbol()")
NAME = function_signature_to_4byte_selector("name()")

# ERC-20 and SPL decimals are uint8
MAX_DECIMALS = 255

# Explorer listing bounds
START_BLOCK = 0
END_BLOCK = 99999999


def format_quantity(raw_balance: int, decimals: int) -> str:
    """
    Format balance with full precision, trimming trailing zeros.

    Args:
        raw_balance: Raw balance value (in smallest unit)
        decimals: Number of decimal places

    Returns:
        Formatted balance string with trailing zeros trimmed

    Examples:
        format_quantity(1000000, 6) -> "1"
        format_quantity(1500000, 6) -> "1.5"
        format_quantity(1234567890123456789, 18) -> "1.234567890123456789"

    Raises:
        ValueError: If decimals is outside 0..255
    """
    if not 0 <= decimals <= MAX_DECIMALS:
        raise ValueError(f"Unsupported token decimals: {decimals}")

    if raw_balance == 0:
        return "0"

    if decimals == 0:
        return str(raw_balance)

    balance = Decimal(raw_balance) / Decimal(10**decimals)
    formatted = format(balance, "f")

    if "." in formatted:
        formatted = formatted.rstrip("0").rstrip(".")

    return formatted


def fiat_value(quantity: str, price: float) -> float:
    """USD value of a decimal quantity string at the given price."""
    try:
        return float(Decimal(quantity) * Decimal(str(price)))
    except InvalidOperation:
        return 0.0


def _token_sort_key(token: TokenHolding) -> Tuple[bool, float, Decimal]:
    try:
        quantity = Decimal(token.quantity)
    except InvalidOperation:
        quantity = Decimal(0)
    return (token.fiat_value is None, -(token.fiat_value or 0.0), -quantity)


def sort_tokens(tokens: List[TokenHolding]) -> List[TokenHolding]:
    """Priced tokens first by value, then the rest by quantity, both descending."""
    return sorted(tokens, key=_token_sort_key)


class BaseBalanceAggregator(ABC):
    """
    Abstract base class for balance aggregators.

    Provides the per-asset-class failure isolation and the enumeration caps
    shared by every chain family.
    """

    def __init__(
        self,
        chain_family: str,
        oracle: CoinGeckoPriceOracle,
        max_token_contracts: int = MAX_TOKEN_CONTRACTS,
        max_collections: int = MAX_COLLECTIONS,
    ):
        """
        Initialize the aggregator.

        Args:
            chain_family: Chain family identifier (solana, evm)
            oracle: Price oracle used to value native coins and tokens
            max_token_contracts: Maximum number of token contracts listed
            max_collections: Maximum number of collections listed
        """
        self.chain_family = chain_family
        self.oracle = oracle
        self.max_token_contracts = max_token_contracts
        self.max_collections = max_collections

    @abstractmethod
    def aggregate(self, address: str) -> BalanceSnapshot:
        """
        Fetch and value all holdings of an address.

        Args:
            address: Address in the chain family's canonical form

        Returns:
            BalanceSnapshot with one NetworkBalance per scanned network
        """
        pass

    @property
    @abstractmethod
    def endpoint_rotations(self) -> int:
        """Total endpoint rotations performed by this aggregator's clients."""
        pass

    def _guarded(self, balance: NetworkBalance, asset_class: str, fetch: Callable[[], Any], default: Any) -> Any:
        """Run one asset-class query, recording a failure on the network balance."""
        try:
            return fetch()
        except (NetworkError, KeyError, TypeError, ValueError) as e:
            logger.warning("[%s] %s query failed: %s", balance.network, asset_class, e)
            balance.partial = True
            balance.errors.append(f"{asset_class}: {e}")
            return default


class SolanaBalanceAggregator(BaseBalanceAggregator):
    """
    Aggregator for Solana addresses.

    Reads the SOL balance and the SPL token accounts of the address.
    Fungible mints from the known-mint table are priced; collectibles
    (zero decimals, amount one) are grouped under a placeholder collection
    and never priced.
    """

    def __init__(
        self,
        client: RpcClient,
        oracle: CoinGeckoPriceOracle,
        max_token_contracts: int = MAX_TOKEN_CONTRACTS,
        max_collections: int = MAX_COLLECTIONS,
    ):
        super().__init__(SOLANA, oracle, max_token_contracts, max_collections)
        self.client = client

    @property
    def endpoint_rotations(self) -> int:
        return self.client.pool.rotations

    def get_lamports(self, address: str) -> int:
        result = self.client.call("getBalance", [address, {"commitment": "confirmed"}])
        value = result["value"] if isinstance(result, dict) else result
        return int(value)

    def get_token_accounts(self, address: str) -> List[Dict[str, Any]]:
        """
        Get the parsed SPL token accounts owned by an address.

        Returns:
            List of {"mint", "amount", "decimals"} dicts, one per token account
        """
        result = self.client.call(
            "getTokenAccountsByOwner",
            [address, {"programId": SPL_TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed"}],
        )
        accounts = []
        if not isinstance(result, dict):
            raise ValueError("Unexpected getTokenAccountsByOwner result")
        for item in result.get("value") or []:
            info = item["account"]["data"]["parsed"]["info"]
            token_amount = info["tokenAmount"]
            accounts.append(
                {
                    "mint": info["mint"],
                    "amount": int(token_amount["amount"]),
                    "decimals": int(token_amount["decimals"]),
                }
            )
            if not 0 <= accounts[-1]["decimals"] <= MAX_DECIMALS:
                raise ValueError(f"Unsupported token decimals for {info['mint']}")
        return accounts

    def aggregate(self, address: str) -> BalanceSnapshot:
        balance = NetworkBalance(network=SOLANA, native=NativeBalance(symbol=SOLANA_NATIVE["symbol"]))

        lamports = self._guarded(balance, "native", lambda: self.get_lamports(address), 0)
        token_accounts = self._guarded(balance, "tokens", lambda: self.get_token_accounts(address), [])

        # Sum token accounts per mint, split fungibles from collectibles
        fungible: Dict[str, Tuple[int, int]] = {}
        collectible_mints: List[str] = []
        for account in token_accounts:
            if account["amount"] <= 0:
                continue
            if account["decimals"] == 0 and account["amount"] == 1:
                collectible_mints.append(account["mint"])
                continue
            raw, _ = fungible.get(account["mint"], (0, account["decimals"]))
            fungible[account["mint"]] = (raw + account["amount"], account["decimals"])

        price_ids = [SOLANA_NATIVE["coingecko_id"]]
        price_ids += [KNOWN_SPL_TOKENS[mint][1] for mint in fungible if mint in KNOWN_SPL_TOKENS]
        quote = self.oracle.get_prices(price_ids)
        balance.pricing_approximate = quote.approximate

        balance.native.quantity = format_quantity(lamports, SOLANA_NATIVE["decimals"])
        balance.native.fiat_value = fiat_value(
            balance.native.quantity, quote.prices.get(SOLANA_NATIVE["coingecko_id"], 0.0)
        )

        tokens = []
        for mint, (raw, decimals) in fungible.items():
            quantity = format_quantity(raw, decimals)
            if mint in KNOWN_SPL_TOKENS:
                symbol, price_id = KNOWN_SPL_TOKENS[mint]
                price = quote.prices.get(price_id, 0.0)
                tokens.append(
                    TokenHolding(
                        contract=mint,
                        symbol=symbol,
                        name=symbol,
                        quantity=quantity,
                        decimals=decimals,
                        price=price,
                        fiat_value=fiat_value(quantity, price),
                    )
                )
            else:
                tokens.append(
                    TokenHolding(
                        contract=mint,
                        symbol="UNKNOWN",
                        name=f"{mint[:8]}...",
                        quantity=quantity,
                        decimals=decimals,
                    )
                )

        tokens = sort_tokens(tokens)
        balance.tokens = tokens[: self.max_token_contracts]
        balance.tokens_omitted = max(len(tokens) - self.max_token_contracts, 0)

        # Collection metadata is not resolved; every collectible shares one group
        # and each unlisted mint counts as an omitted collection
        if collectible_mints:
            balance.collectibles = [
                CollectionHolding(
                    name=SOLANA_COLLECTIBLE_PLACEHOLDER,
                    count=len(collectible_mints),
                    symbol=SOLANA_COLLECTIBLE_PLACEHOLDER,
                    members=collectible_mints[: self.max_collections],
                )
            ]
            balance.collectibles_omitted = max(len(collectible_mints) - self.max_collections, 0)

        return BalanceSnapshot(chain_family=SOLANA, networks=[balance], fetched_at=utc_now())


class EVMBalanceAggregator(BaseBalanceAggregator):
    """
    Aggregator for EVM addresses across the configured networks.

    Token and collection contracts are discovered from the explorer's
    transfer listings and read with eth_call. Native coins are priced;
    tokens and collectibles are listed unpriced.
    """

    def __init__(
        self,
        clients: Dict[str, RpcClient],
        oracle: CoinGeckoPriceOracle,
        explorer: Optional[RpcClient] = None,
        explorer_api_key: Optional[str] = None,
        networks: Optional[Dict[str, Dict[str, Any]]] = None,
        max_token_contracts: int = MAX_TOKEN_CONTRACTS,
        max_collections: int = MAX_COLLECTIONS,
    ):
        """
        Initialize the aggregator.

        Args:
            clients: JSON-RPC client per network key
            oracle: Price oracle for native coins
            explorer: Etherscan-style multichain explorer client (None disables enumeration)
            explorer_api_key: API key sent with explorer requests
            networks: Network table (defaults to EVM_NETWORKS)
            max_token_contracts: Maximum number of token contracts read per network
            max_collections: Maximum number of collections read per network
        """
        super().__init__(EVM, oracle, max_token_contracts, max_collections)
        self.networks = networks or EVM_NETWORKS
        self.clients = clients
        self.explorer = explorer
        self.explorer_api_key = explorer_api_key

    @property
    def endpoint_rotations(self) -> int:
        total = sum(client.pool.rotations for client in self.clients.values())
        if self.explorer is not None:
            total += self.explorer.pool.rotations
        return total

    def _eth_call(self, client: RpcClient, contract: str, data: bytes) -> bytes:
        result = client.call("eth_call", [{"to": contract, "data": "0x" + data.hex()}, "latest"])
        return to_bytes(hexstr=result or "0x")

    def _read_uint(self, client: RpcClient, contract: str, selector: bytes, *args: str) -> int:
        data = selector + (encode(["address"], list(args)) if args else b"")
        return decode(["uint256"], self._eth_call(client, contract, data))[0]

    def _read_decimals(self, client: RpcClient, contract: str) -> int:
        return decode(["uint8"], self._eth_call(client, contract, DECIMALS))[0]

    def _read_string(self, client: RpcClient, contract: str, selector: bytes) -> str:
        raw = self._eth_call(client, contract, selector)
        try:
            return decode(["string"], raw)[0]
        except (DecodingError, OverflowError):
            # Older contracts return bytes32
            return decode(["bytes32"], raw)[0].rstrip(b"\x00").decode("utf-8", "replace")

    def get_native_balance(self, network: str, address: str) -> int:
        result = self.clients[network].call("eth_getBalance", [address, "latest"])
        return int(result, 16)

    def list_contracts(self, network: str, address: str, action: str) -> List[str]:
        """
        List the distinct contracts an address has transfers with.

        Args:
            network: Network key
            address: EVM address
            action: Explorer action (tokentx or tokennfttx)

        Returns:
            Checksummed contract addresses in listing order

        Raises:
            NetworkError: If the explorer rejects the request
        """
        params = {
            "chainid": self.networks[network]["chain_id"],
            "module": "account",
            "action": action,
            "address": address,
            "startblock": START_BLOCK,
            "endblock": END_BLOCK,
            "sort": "desc",
            "apikey": self.explorer_api_key,
        }
        data = self.explorer.get("", params=params)
        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected explorer response for {action}")

        if str(data.get("status")) != "1":
            message = str(data.get("message", ""))
            if message.startswith("No transactions") or data.get("result") == []:
                return []
            detail = self.explorer._sanitize_error_message(str(data.get("result") or message))
            raise NetworkError(f"Explorer error: {detail}")

        contracts = [to_checksum_address(tx["contractAddress"]) for tx in data["result"]]
        return list(dict.fromkeys(contracts))

    def _enumeration_enabled(self, network: str) -> bool:
        return self.explorer is not None and bool(self.networks[network].get("explorer"))

    def get_tokens(self, network: str, address: str, balance: NetworkBalance) -> List[TokenHolding]:
        contracts = self.list_contracts(network, address, "tokentx")
        balance.tokens_omitted = max(len(contracts) - self.max_token_contracts, 0)
        client = self.clients[network]
        owner = to_checksum_address(address)

        tokens: List[TokenHolding] = []
        skipped = 0
        for contract in contracts[: self.max_token_contracts]:
            try:
                raw = self._read_uint(client, contract, BALANCE_OF, owner)
                if raw <= 0:
                    continue
                decimals = self._read_decimals(client, contract)
                tokens.append(
                    TokenHolding(
                        contract=contract,
                        symbol=self._read_string(client, contract, SYMBOL),
                        name=self._read_string(client, contract, NAME),
                        quantity=format_quantity(raw, decimals),
                        decimals=decimals,
                    )
                )
            except (DecodingError, ValueError, NetworkError) as e:
                # Not ERC-20 compliant or unreadable
                skipped += 1
                if isinstance(e, NetworkError):
                    balance.partial = True
                continue

        if skipped > 0:
            logger.info("[%s] Skipped %d token contract(s) that could not be read", network, skipped)

        return sort_tokens(tokens)

    def get_collections(self, network: str, address: str, balance: NetworkBalance) -> List[CollectionHolding]:
        contracts = self.list_contracts(network, address, "tokennfttx")
        balance.collectibles_omitted = max(len(contracts) - self.max_collections, 0)
        client = self.clients[network]
        owner = to_checksum_address(address)

        collections: List[CollectionHolding] = []
        for contract in contracts[: self.max_collections]:
            try:
                count = self._read_uint(client, contract, BALANCE_OF, owner)
            except (DecodingError, ValueError, NetworkError) as e:
                if isinstance(e, NetworkError):
                    balance.partial = True
                continue
            if count <= 0:
                continue

            try:
                name = self._read_string(client, contract, NAME)
            except (DecodingError, ValueError, NetworkError):
                name = "Unknown"
            try:
                symbol = self._read_string(client, contract, SYMBOL)
            except (DecodingError, ValueError, NetworkError):
                symbol = "NFT"

            collections.append(CollectionHolding(name=name, count=count, contract=contract, symbol=symbol))

        return sorted(collections, key=lambda c: -c.count)

    def aggregate(self, address: str) -> BalanceSnapshot:
        price_ids = [str(net["coingecko_id"]) for net in self.networks.values()]
        quote = self.oracle.get_prices(price_ids)

        results = []
        for key, network in self.networks.items():
            balance = NetworkBalance(network=key, native=NativeBalance(symbol=str(network["symbol"])))
            balance.pricing_approximate = quote.approximate

            wei = self._guarded(balance, "native", lambda: self.get_native_balance(key, address), 0)
            balance.native.quantity = format_quantity(wei, 18)
            balance.native.fiat_value = fiat_value(
                balance.native.quantity, quote.prices.get(str(network["coingecko_id"]), 0.0)
            )

            if self._enumeration_enabled(key):
                balance.tokens = self._guarded(
                    balance, "tokens", lambda: self.get_tokens(key, address, balance), []
                )
                balance.collectibles = self._guarded(
                    balance, "collectibles", lambda: self.get_collections(key, address, balance), []
                )

            results.append(balance)

        return BalanceSnapshot(chain_family=EVM, networks=results, fetched_at=utc_now())


def create_aggregator(
    chain_family: str,
    settings: Optional[ScanSettings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BaseBalanceAggregator:
    """
    Factory function to create the aggregator for a chain family.

    Args:
        chain_family: Chain family identifier
        settings: Endpoints, caps and timeouts (defaults to ScanSettings())
        sleep: Sleep function used for retry backoff

    Returns:
        Aggregator instance for the chain family

    Raises:
        ValueError: If the chain family is not supported
    """
    settings = settings or ScanSettings()
    oracle = CoinGeckoPriceOracle(
        RpcClient([settings.coingecko_url], timeout=settings.timeout, sleep=sleep),
        cache=PriceCache(ttl=settings.price_cache_ttl),
    )

    if chain_family == SOLANA:
        return SolanaBalanceAggregator(
            RpcClient(settings.solana_rpc_urls, timeout=settings.timeout, sleep=sleep),
            oracle,
            max_token_contracts=settings.max_token_contracts,
            max_collections=settings.max_collections,
        )
    elif chain_family == EVM:
        clients = {
            network: RpcClient(settings.evm_rpc_urls[network], timeout=settings.timeout, sleep=sleep)
            for network in EVM_NETWORKS
        }
        explorer = None
        if settings.explorer_api_key:
            explorer = RpcClient(
                [settings.explorer_url],
                timeout=settings.timeout,
                secrets=[settings.explorer_api_key],
                sleep=sleep,
            )
        else:
            logger.warning("No explorer API key configured; EVM token and collectible listing is disabled")
        return EVMBalanceAggregator(
            clients,
            oracle,
            explorer=explorer,
            explorer_api_key=settings.explorer_api_key,
            max_token_contracts=settings.max_token_contracts,
            max_collections=settings.max_collections,
        )
    else:
        raise ValueError(f"Unsupported chain family: {chain_family}")
