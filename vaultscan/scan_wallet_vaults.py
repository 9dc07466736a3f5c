#!/usr/bin/env python3
"""
Scan browser wallet vaults and aggregate the balances of every account.

This script finds the wallet extension's vault in each browser profile,
lists every account it holds, fetches native coin, token and collectible
balances per account and keeps the progress in a JSON cache so that an
interrupted scan resumes where it stopped.
"""

import argparse
import sys
from typing import List, Optional

from vaultscan.lib.account_extractor import create_extractor
from vaultscan.lib.balance_aggregator import create_aggregator
from vaultscan.lib.config import CHAIN_FAMILIES, DEFAULT_WALLETS, EVM, EXTENSION_IDS, ScanSettings
from vaultscan.lib.errors import ProfileAccessError
from vaultscan.lib.formatters import format_scan_summary
from vaultscan.lib.logger import setup_logging
from vaultscan.lib.models import ScannedAccount
from vaultscan.lib.profiles import SUPPORTED_BROWSERS, list_profiles
from vaultscan.lib.scan_cache import ScanCache, cache_path
from vaultscan.lib.scan_coordinator import (
    STATUS_NO_WALLETS_FOUND,
    ScanCoordinator,
    resolve_credentials,
)


def log(prefix: str, message: str) -> None:
    """Log a message with a prefix."""
    print(f"[{prefix}] {message}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scan browser wallet vaults and aggregate account balances.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan MetaMask accounts in Brave
  %(prog)s "your-password"

  # Scan Phantom Solana accounts in Arc, ignoring the previous run
  %(prog)s "your-password" --chain solana --browser arc --force

  # Show the last saved scan without touching the network
  %(prog)s --chain solana --cache-only
        """,
    )

    parser.add_argument(
        "password",
        nargs="?",
        help="Wallet extension password (not needed with --cache-only)",
    )
    parser.add_argument(
        "--chain",
        choices=CHAIN_FAMILIES,
        default=EVM,
        help="Chain family to scan (default: evm)",
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
        help="Browser to read profiles from (default: brave)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the saved scan and fetch every account again",
    )
    parser.add_argument(
        "--skip-fetch",
        action="store_true",
        help="List accounts and reuse saved balances only; no network requests",
    )
    parser.add_argument(
        "--cache-only",
        action="store_true",
        help="Show the saved scan without reading vaults or the network",
    )
    parser.add_argument(
        "--cache-dir",
        help="Directory of the scan cache (default: VAULTSCAN_CACHE_DIR or the current directory)",
    )
    parser.add_argument(
        "--home",
        help="Home directory to look for browser profiles in (default: current user)",
    )
    parser.add_argument(
        "--explorer-api-key",
        help="Etherscan API key for EVM token and collectible listing",
    )
    return parser


def report_progress(position: int, total: int, entry: ScannedAccount, reused: bool) -> None:
    prefix = f"{position}/{total}"
    if entry.snapshot is None:
        log(prefix, f"{entry.address}: pending")
    elif reused:
        log(prefix, f"{entry.address}: cached (${entry.total_fiat_value:.2f})")
    elif entry.snapshot.error:
        log(prefix, f"{entry.address}: ERROR: {entry.snapshot.error}")
    else:
        note = " (partial)" if entry.snapshot.partial else ""
        log(prefix, f"{entry.address}: ${entry.total_fiat_value:.2f}{note}")


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
    if parsed_args.explorer_api_key:
        settings.explorer_api_key = parsed_args.explorer_api_key

    chain = parsed_args.chain
    wallet = parsed_args.wallet or DEFAULT_WALLETS[chain]
    browser = parsed_args.browser
    cache = ScanCache(cache_path(settings.cache_dir, chain, browser))

    if parsed_args.cache_only:
        run = cache.load()
        if run is None:
            print(f"Error: no saved scan at {cache.path}", file=sys.stderr)
            return 1
        print(format_scan_summary(run))
        return 0

    if not parsed_args.password:
        print("Error: a password is required unless --cache-only is given", file=sys.stderr)
        return 1

    try:
        extractor = create_extractor(wallet, chain, password=parsed_args.password)
        profiles = list_profiles(browser, wallet, home=parsed_args.home)
    except (ValueError, ProfileAccessError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    log(browser, f"Found {len(profiles)} profile(s) with {wallet} installed")

    coordinator = ScanCoordinator(
        extractor,
        create_aggregator(chain, settings),
        cache,
        browser=browser,
        delay_range=settings.pacing_delay,
        on_progress=report_progress,
    )
    outcome = coordinator.run(profiles, force_rescan=parsed_args.force, skip_fetch=parsed_args.skip_fetch)

    if outcome.status == STATUS_NO_WALLETS_FOUND:
        log(browser, f"No {chain} wallets found")
        return 1

    counts = resolve_credentials(
        extractor,
        profiles,
        outcome.run.accounts,
        parsed_args.password,
        store_opener=coordinator.store_opener,
    )
    log(
        wallet,
        "Credentials: "
        + ", ".join(f"{count} {status}" for status, count in sorted(counts.items())),
    )
    # Secrets stay in memory only
    for entry in outcome.run.accounts:
        entry.credentials = None

    print(format_scan_summary(outcome.run))

    log(
        browser,
        f"{outcome.fetched} fetched, {outcome.reused} reused, "
        f"{outcome.failed} failed, {outcome.pending} pending",
    )
    print(f"\nResults written to: {cache.path}", file=sys.stderr)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
