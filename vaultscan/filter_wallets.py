#!/usr/bin/env python3
"""
Filter a saved scan down to funded wallets, ranked by value.

Reads the scan cache written by scan_wallet_vaults, keeps the accounts
that hold anything, removes duplicate addresses and writes the result as
JSON (and optionally a CSV of holdings). With --with-credentials the
private material of the kept wallets is resolved from the vaults and
included in the JSON output.
"""

import argparse
import sys
from typing import List, Optional

from vaultscan.lib.account_extractor import create_extractor
from vaultscan.lib.config import CHAIN_FAMILIES, DEFAULT_WALLETS, EVM, EXTENSION_IDS, ScanSettings
from vaultscan.lib.errors import ProfileAccessError
from vaultscan.lib.formatters import filtered_output_path, format_filter_summary, write_csv, write_json
from vaultscan.lib.logger import setup_logging
from vaultscan.lib.profiles import SUPPORTED_BROWSERS, list_profiles
from vaultscan.lib.scan_cache import ScanCache, cache_path
from vaultscan.lib.scan_coordinator import resolve_credentials
from vaultscan.lib.wallet_filter import filter_wallets, has_balance


def log(prefix: str, message: str) -> None:
    """Log a message with a prefix."""
    print(f"[{prefix}] {message}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep funded wallets of a saved scan, dedupe them and rank by value.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Filter the last EVM scan from Brave
  %(prog)s

  # Filter the last Solana scan from Arc and export holdings to CSV
  %(prog)s --chain solana --browser arc --csv holdings.csv

  # Include seed phrases and private keys of the funded wallets
  %(prog)s --with-credentials "your-password"
        """,
    )

    parser.add_argument(
        "--chain",
        choices=CHAIN_FAMILIES,
        default=EVM,
        help="Chain family of the saved scan (default: evm)",
    )
    parser.add_argument(
        "--wallet",
        choices=sorted(EXTENSION_IDS),
        help="Wallet extension (default: metamask for evm, phantom for solana)",
    )
    parser.add_argument(
        "--browser",
        choices=SUPPORTED_BROWSERS,
        default="brave",
        help="Browser of the saved scan (default: brave)",
    )
    parser.add_argument(
        "--cache-dir",
        help="Directory of the scan cache (default: VAULTSCAN_CACHE_DIR or the current directory)",
    )
    parser.add_argument(
        "--output",
        help="Output JSON path (default: wallets_with_balance file next to the cache)",
    )
    parser.add_argument(
        "--csv",
        help="Also write holdings to this CSV path (timestamp auto-appended)",
    )
    parser.add_argument(
        "--with-credentials",
        metavar="PASSWORD",
        help="Resolve and include private material of the kept wallets",
    )
    parser.add_argument(
        "--home",
        help="Home directory to look for browser profiles in (default: current user)",
    )
    return parser


def main(args: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    parsed_args = build_parser().parse_args(args)
    setup_logging()

    settings = ScanSettings.from_env()
    if parsed_args.cache_dir:
        settings.cache_dir = parsed_args.cache_dir

    chain = parsed_args.chain
    wallet = parsed_args.wallet or DEFAULT_WALLETS[chain]
    browser = parsed_args.browser
    cache = ScanCache(cache_path(settings.cache_dir, chain, browser))

    run = cache.load()
    if run is None:
        print(f"Error: {cache.path} not found. Run the balance scan first.", file=sys.stderr)
        return 1

    log(chain, f"Read {len(run.accounts)} wallet(s) from {cache.path}")
    if not run.is_complete:
        log(chain, f"Scan incomplete: {run.completed_count} of {len(run.accounts)} accounts fetched")

    if parsed_args.with_credentials:
        funded = [entry for entry in run.accounts if has_balance(entry)]
        try:
            extractor = create_extractor(wallet, chain, password=parsed_args.with_credentials)
            profiles = list_profiles(browser, wallet, home=parsed_args.home)
        except (ValueError, ProfileAccessError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        counts = resolve_credentials(extractor, profiles, funded, parsed_args.with_credentials)
        log(
            wallet,
            "Credentials: " + ", ".join(f"{count} {status}" for status, count in sorted(counts.items())),
        )

    report = filter_wallets(run)
    if not report.wallets:
        log(chain, "No wallets with balance found")

    output_path = parsed_args.output or str(filtered_output_path(settings.cache_dir, chain, browser))
    write_json(report.to_dict(), output_path)
    print(format_filter_summary(report))
    print(f"\nFiltered wallets written to: {output_path}", file=sys.stderr)

    if parsed_args.with_credentials:
        print(
            "WARNING: the output file contains seed phrases and private keys. Keep it secure.",
            file=sys.stderr,
        )

    if parsed_args.csv:
        csv_file = write_csv(report.wallets, parsed_args.csv)
        print(f"Holdings written to: {csv_file}", file=sys.stderr)

    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
