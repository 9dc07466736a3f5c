"""
Output formatters for vault scan reports.

This module handles the console summaries of a scan run and of a filtered
report, the filtered JSON file and the CSV holdings export with
timestamp-based filenames.
"""

import csv
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

from .models import CSV_COLUMNS, ScannedAccount, ScanRun, is_positive
from .scan_cache import scope_filename
from .wallet_filter import FilteredReport

TOP_TOKENS = 10
TOP_COLLECTIONS = 5
RULE = "=" * 80


def generate_timestamp() -> str:
    """
    Generate a timestamp string for filenames.

    Returns:
        Timestamp in YYYYMMDD_HHMMSS format
    """
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def generate_filename(base_path: str, timestamp: Optional[str] = None) -> str:
    """
    Generate a timestamped filename.

    Examples:
        generate_filename("holdings.csv", "20241214_153022") -> "holdings_20241214_153022.csv"
    """
    if timestamp is None:
        timestamp = generate_timestamp()

    path = Path(base_path)
    suffix = path.suffix or ".csv"
    return str(path.parent / f"{path.stem}_{timestamp}{suffix}")


def filtered_output_path(directory: Union[str, Path], chain_family: str, browser: Optional[str] = None) -> Path:
    """Path of the filtered report for one chain family and browser."""
    return Path(directory) / scope_filename("wallets_with_balance", chain_family, browser)


def holding_rows(entries: List[ScannedAccount]) -> List[List[str]]:
    """
    Flatten the holdings of accounts into CSV rows.

    One row per non-zero native balance, token and collection.
    """
    rows = []
    for entry in entries:
        if entry.snapshot is None:
            continue
        for network in entry.snapshot.networks:
            if is_positive(network.native.quantity):
                rows.append(
                    [
                        entry.address,
                        network.network,
                        "native",
                        network.native.symbol,
                        network.native.symbol,
                        "NATIVE",
                        network.native.quantity,
                        f"{network.native.fiat_value:.2f}",
                    ]
                )
            for token in network.tokens:
                rows.append(
                    [
                        entry.address,
                        network.network,
                        "token",
                        token.symbol,
                        token.name,
                        token.contract,
                        token.quantity,
                        "" if token.fiat_value is None else f"{token.fiat_value:.2f}",
                    ]
                )
            for collection in network.collectibles:
                rows.append(
                    [
                        entry.address,
                        network.network,
                        "collectible",
                        collection.symbol or "",
                        collection.name,
                        collection.contract or "",
                        str(collection.count),
                        "",
                    ]
                )
    return rows


def write_csv_to_stream(entries: List[ScannedAccount], stream: TextIO) -> None:
    """
    Write account holdings to a CSV stream.

    Args:
        entries: Accounts whose holdings to write
        stream: File-like object to write to
    """
    writer = csv.writer(stream)
    writer.writerow(CSV_COLUMNS)

    for row in holding_rows(entries):
        writer.writerow(row)


def write_csv(entries: List[ScannedAccount], output_path: Optional[str] = None) -> Optional[str]:
    """
    Write account holdings to a timestamped CSV file or stdout.

    Returns:
        The file path written, or None when writing to stdout
    """
    if output_path is None:
        write_csv_to_stream(entries, sys.stdout)
        return None

    csv_file = generate_filename(output_path)
    with open(csv_file, "w", newline="", encoding="utf-8") as f:
        write_csv_to_stream(entries, f)
    return csv_file


def write_json(data: Dict[str, Any], output_path: Union[str, Path]) -> str:
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    return str(output_path)


def _wallet_lines(entry: ScannedAccount) -> List[str]:
    lines = []
    snapshot = entry.snapshot
    if snapshot is None:
        return ["  (pending)"]
    if snapshot.error:
        lines.append(f"  Error: {snapshot.error}")

    for network in snapshot.networks:
        if not network.has_holdings():
            continue
        flags = []
        if network.partial:
            flags.append("partial")
        if network.pricing_approximate:
            flags.append("approximate prices")
        suffix = f" ({', '.join(flags)})" if flags else ""
        lines.append(f"  [{network.network}]{suffix}")

        if is_positive(network.native.quantity):
            lines.append(
                f"    {network.native.symbol}: {network.native.quantity} (${network.native.fiat_value:.2f})"
            )

        for token in network.tokens[:TOP_TOKENS]:
            value = "" if token.fiat_value is None else f" (${token.fiat_value:.2f})"
            lines.append(f"    {token.symbol}: {token.quantity}{value}")
        hidden = max(len(network.tokens) - TOP_TOKENS, 0) + network.tokens_omitted
        if hidden > 0:
            lines.append(f"    ... and {hidden} more token(s)")

        for collection in network.collectibles[:TOP_COLLECTIONS]:
            lines.append(f"    {collection.name}: {collection.count} item(s)")
        hidden = max(len(network.collectibles) - TOP_COLLECTIONS, 0) + network.collectibles_omitted
        if hidden > 0:
            lines.append(f"    ... and {hidden} more collection(s)")

    return lines


def format_scan_summary(run: ScanRun) -> str:
    """Console summary of a scan run: every wallet and the portfolio total."""
    lines = [
        RULE,
        f"SCAN SUMMARY ({run.chain_family}, {run.browser or 'all'})",
        RULE,
        f"Accounts: {len(run.accounts)} ({run.completed_count} completed)",
        f"Started: {run.scan_started_at}",
        f"Last updated: {run.last_updated_at}",
    ]

    for number, entry in enumerate(run.accounts, start=1):
        account = entry.account
        lines.append("")
        lines.append(f"#{number} - {account.address}")
        lines.append(f"  Profile: {account.profile}  Origin: {account.origin}")
        lines.append(f"  Total USD: ${entry.total_fiat_value:.2f}")
        lines.extend(_wallet_lines(entry))

    lines.append("")
    lines.append(RULE)
    lines.append(f"Total portfolio value: ${run.total_portfolio_value:.2f}")
    lines.append(RULE)
    return "\n".join(lines)


def format_filter_summary(report: FilteredReport) -> str:
    """Console summary of a filtered report. Secrets are never printed."""
    lines = [
        RULE,
        f"WALLET FILTER SUMMARY ({report.chain_family}, {report.browser or 'all'})",
        RULE,
        f"Total wallets in input: {report.original_total}",
        f"Wallets with balance > 0: {report.with_balance}",
        f"Unique wallets (duplicates removed): {len(report.wallets)}",
        f"Total portfolio value: ${report.total_portfolio_value:.2f}",
        RULE,
    ]

    for number, entry in enumerate(report.wallets, start=1):
        lines.append("")
        lines.append(f"#{number} - {entry.address}")
        lines.append(f"  Origin: {entry.account.origin}")
        lines.append(f"  Profile: {entry.account.profile}")
        lines.append(f"  Total USD: ${entry.total_fiat_value:.2f}")
        if entry.snapshot is not None:
            funded = [n.network for n in entry.snapshot.networks if n.has_holdings()]
            if funded:
                lines.append(f"  Has balances on: {', '.join(funded)}")

    lines.append("")
    lines.append(RULE)
    return "\n".join(lines)
