"""
Network, wallet and scan configuration.

Defaults live in module-level tables. ScanSettings collects the values a
scan needs; ScanSettings.from_env() applies environment overrides and the
command line applies its own arguments on top.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


SOLANA = "solana"
EVM = "evm"
CHAIN_FAMILIES = [SOLANA, EVM]

PHANTOM = "phantom"
METAMASK = "metamask"

# Browser extension ids
EXTENSION_IDS = {
    PHANTOM: "bfnaelmomeimhlpmgjnjophhpkkoljpa",
    METAMASK: "nkbihfbeogaeaoehlefnkodbefgpgknn",
}

# Wallet used when only a chain family is selected
DEFAULT_WALLETS = {
    SOLANA: PHANTOM,
    EVM: METAMASK,
}

DEFAULT_SOLANA_RPC_URLS = [
    "https://api.mainnet-beta.solana.com",
    "https://solana-rpc.publicnode.com",
]

# EVM networks scanned for every EVM address
EVM_NETWORKS: Dict[str, Dict[str, object]] = {
    "ethereum": {
        "name": "Ethereum",
        "chain_id": 1,
        "rpc": ["https://eth.llamarpc.com", "https://ethereum-rpc.publicnode.com"],
        "explorer": True,
        "symbol": "ETH",
        "coingecko_id": "ethereum",
    },
    "bsc": {
        "name": "BSC",
        "chain_id": 56,
        "rpc": ["https://bsc-dataseed1.binance.org", "https://bsc-dataseed2.binance.org"],
        "explorer": True,
        "symbol": "BNB",
        "coingecko_id": "binancecoin",
    },
    "base": {
        "name": "Base",
        "chain_id": 8453,
        "rpc": ["https://mainnet.base.org", "https://base-rpc.publicnode.com"],
        "explorer": True,
        "symbol": "ETH",
        "coingecko_id": "ethereum",
    },
    "sei": {
        "name": "Sei",
        "chain_id": 1329,
        "rpc": ["https://evm-rpc.sei-apis.com"],
        "explorer": False,
        "symbol": "SEI",
        "coingecko_id": "sei-network",
    },
}

SOLANA_NATIVE = {"symbol": "SOL", "name": "Solana", "decimals": 9, "coingecko_id": "solana"}

# Well-known SPL mints: mint -> (symbol, coingecko id)
KNOWN_SPL_TOKENS: Dict[str, Tuple[str, str]] = {
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": ("USDC", "usd-coin"),
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": ("USDT", "tether"),
    "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So": ("mSOL", "msol"),
    "So11111111111111111111111111111111111111112": ("SOL", "solana"),
    "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263": ("BONK", "bonk"),
    "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs": ("ETH", "ethereum"),
    "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm": ("WIF", "dogwifcoin"),
    "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN": ("JUP", "jupiter-exchange-solana"),
    "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr": ("POPCAT", "popcat"),
    "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R": ("RAY", "raydium"),
    "jtojtomepa8beP8AuQc6eXt5FriJwfFMwQx2v2f9mCL": ("JTO", "jito-governance-token"),
    "5oVNBeEEQvYi1cX3ir8Dx5n1P7pdxydbGF2X4TxVusJm": ("INF", "socean-staked-sol"),
}

DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"
# Etherscan-family multichain API, selected per network by chainid
DEFAULT_EXPLORER_URL = "https://api.etherscan.io/v2/api"

PRICE_CACHE_TTL = 60.0  # seconds
MAX_TOKEN_CONTRACTS = 50
MAX_COLLECTIONS = 30
DEFAULT_PACING_DELAY = (0.5, 1.5)  # seconds, randomized between accounts
DEFAULT_TIMEOUT = 15.0  # seconds


def _split_urls(value: str) -> List[str]:
    return [url.strip() for url in value.split(",") if url.strip()]


@dataclass
class ScanSettings:
    """Everything a scan needs besides the vault password."""

    solana_rpc_urls: List[str] = field(default_factory=lambda: list(DEFAULT_SOLANA_RPC_URLS))
    evm_rpc_urls: Dict[str, List[str]] = field(
        default_factory=lambda: {name: list(net["rpc"]) for name, net in EVM_NETWORKS.items()}
    )
    explorer_url: str = DEFAULT_EXPLORER_URL
    explorer_api_key: Optional[str] = None
    coingecko_url: str = DEFAULT_COINGECKO_URL
    cache_dir: str = "."
    price_cache_ttl: float = PRICE_CACHE_TTL
    max_token_contracts: int = MAX_TOKEN_CONTRACTS
    max_collections: int = MAX_COLLECTIONS
    pacing_delay: Tuple[float, float] = DEFAULT_PACING_DELAY
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ScanSettings":
        """
        Build settings from VAULTSCAN_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            ScanSettings with overrides applied
        """
        env = os.environ if environ is None else environ
        settings = cls()

        if env.get("VAULTSCAN_SOLANA_RPC_URLS"):
            settings.solana_rpc_urls = _split_urls(env["VAULTSCAN_SOLANA_RPC_URLS"])

        for network in EVM_NETWORKS:
            value = env.get(f"VAULTSCAN_EVM_RPC_{network.upper()}")
            if value:
                settings.evm_rpc_urls[network] = _split_urls(value)

        settings.explorer_url = env.get("VAULTSCAN_EXPLORER_URL", settings.explorer_url)
        settings.explorer_api_key = env.get("VAULTSCAN_EXPLORER_API_KEY") or None
        settings.coingecko_url = env.get("VAULTSCAN_COINGECKO_URL", settings.coingecko_url)
        settings.cache_dir = env.get("VAULTSCAN_CACHE_DIR", settings.cache_dir)

        # "low,high" in seconds; a single value fixes the pause
        if env.get("VAULTSCAN_PACING_DELAY"):
            low, _, high = env["VAULTSCAN_PACING_DELAY"].partition(",")
            settings.pacing_delay = (float(low), float(high or low))
        return settings
