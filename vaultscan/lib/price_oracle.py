"""
USD prices from CoinGecko with a short-lived cache.

Prices inside the freshness window are served from the cache. When the
oracle cannot be reached the last known price (however old) or zero is
used and the quote is marked approximate.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Tuple

from .config import PRICE_CACHE_TTL
from .errors import NetworkError
from .logger import get_logger
from .rpc_client import RpcClient

logger = get_logger(__name__)


@dataclass
class PriceQuote:
    """Prices keyed by oracle id."""

    prices: Dict[str, float] = field(default_factory=dict)
    approximate: bool = False  # A stale or missing price was substituted


class PriceCache:
    """Oracle id -> (price, fetched time) with a fixed freshness window."""

    def __init__(self, ttl: float = PRICE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[float, float]] = {}

    def get_fresh(self, price_id: str) -> Optional[float]:
        entry = self._entries.get(price_id)
        if entry is None or self.clock() - entry[1] >= self.ttl:
            return None
        return entry[0]

    def get_any(self, price_id: str) -> Optional[float]:
        """Last known price regardless of age."""
        entry = self._entries.get(price_id)
        return entry[0] if entry else None

    def put(self, price_id: str, price: float) -> None:
        self._entries[price_id] = (price, self.clock())


class CoinGeckoPriceOracle:
    """Batch price lookups against the CoinGecko simple price endpoint."""

    def __init__(self, client: RpcClient, cache: Optional[PriceCache] = None, currency: str = "usd"):
        self.client = client
        self.cache = cache or PriceCache()
        self.currency = currency

    def get_prices(self, price_ids: Iterable[str]) -> PriceQuote:
        """
        Get prices for several oracle ids, querying only the stale ones.

        Args:
            price_ids: CoinGecko ids (e.g. "solana", "usd-coin")

        Returns:
            PriceQuote with a price (possibly 0) for every id
        """
        quote = PriceQuote()
        missing = []

        for price_id in dict.fromkeys(price_ids):
            cached = self.cache.get_fresh(price_id)
            if cached is None:
                missing.append(price_id)
            else:
                quote.prices[price_id] = cached

        if not missing:
            return quote

        try:
            data = self.client.get(
                "/simple/price",
                params={"ids": ",".join(missing), "vs_currencies": self.currency},
            )
        except NetworkError as e:
            logger.warning("Price lookup failed, using last known prices: %s", e)
            quote.approximate = True
            for price_id in missing:
                quote.prices[price_id] = self.cache.get_any(price_id) or 0.0
            return quote

        data = data if isinstance(data, dict) else {}
        for price_id in missing:
            entry = data.get(price_id)
            price = float(entry.get(self.currency) or 0.0) if isinstance(entry, dict) else 0.0
            self.cache.put(price_id, price)
            quote.prices[price_id] = price

        return quote

    def get_price(self, price_id: str) -> Tuple[float, bool]:
        """Get a single price and whether it is approximate."""
        quote = self.get_prices([price_id])
        return quote.prices.get(price_id, 0.0), quote.approximate
