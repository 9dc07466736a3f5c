"""
Deterministic key derivation for the supported chain families.

Seed phrases are derived with BIP-39 (empty passphrase) followed by
SLIP-10 ed25519 for Solana (fully hardened path) or BIP-32 secp256k1 for
EVM. Raw imported keys are decoded per family. All functions are pure and
never log key material.
"""

import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import base58
from eth_account import Account
from mnemonic import Mnemonic
from solders.keypair import Keypair

from .config import EVM, SOLANA
from .errors import InvalidKeyMaterial, InvalidSeed

Account.enable_unaudited_hdwallet_features()

HARDENED_OFFSET = 0x80000000
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
ED25519_SEED_KEY = b"ed25519 seed"

_HEX_KEY_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_MNEMONIC = Mnemonic("english")


@dataclass
class DerivedKey:
    """A concrete keypair reduced to its printable parts."""

    address: str
    private_key: str  # base58 (solana) or 0x-hex (evm)
    derivation_path: Optional[str] = None


def derivation_path(chain_family: str, index: int) -> str:
    """
    Get the derivation path of the account at a zero-based index.

    Args:
        chain_family: SOLANA or EVM
        index: Zero-based account index

    Returns:
        BIP-44 style path string
    """
    if index < 0:
        raise ValueError(f"Derivation index must be non-negative, got {index}")
    if chain_family == SOLANA:
        return f"m/44'/501'/{index}'/0'"
    if chain_family == EVM:
        return f"m/44'/60'/0'/0/{index}"
    raise ValueError(f"Unsupported chain family: {chain_family}")


def normalize_seed_phrase(seed_phrase: str) -> str:
    return " ".join(seed_phrase.strip().lower().split())


def validate_seed_phrase(seed_phrase: str) -> str:
    """
    Check a seed phrase against the BIP-39 wordlist and checksum.

    Returns:
        The normalized phrase

    Raises:
        InvalidSeed: If the phrase fails wordlist or checksum validation
    """
    phrase = normalize_seed_phrase(seed_phrase or "")
    try:
        valid = _MNEMONIC.check(phrase)
    except (ValueError, LookupError):
        valid = False
    if not valid:
        raise InvalidSeed("Seed phrase failed BIP-39 checksum validation")
    return phrase


def seed_from_phrase(seed_phrase: str) -> bytes:
    """Validate a seed phrase and compute its 64-byte BIP-39 seed."""
    return Mnemonic.to_seed(validate_seed_phrase(seed_phrase), passphrase="")


def _parse_hardened_path(path: str) -> List[int]:
    parts = path.split("/")
    if parts[0] != "m":
        raise ValueError(f"Derivation path must start with 'm': {path}")
    indices = []
    for part in parts[1:]:
        if not part.endswith("'"):
            raise ValueError(f"ed25519 derivation only supports hardened segments: {path}")
        indices.append(int(part[:-1]) + HARDENED_OFFSET)
    return indices


def slip10_ed25519_key(seed: bytes, path: str) -> bytes:
    """
    Derive a 32-byte ed25519 private seed along a fully hardened SLIP-10 path.

    Args:
        seed: BIP-39 binary seed
        path: Path such as m/44'/501'/0'/0'

    Returns:
        32-byte private key seed
    """
    digest = hmac.new(ED25519_SEED_KEY, seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]

    for index in _parse_hardened_path(path):
        data = b"\x00" + key + index.to_bytes(4, "big")
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        key, chain_code = digest[:32], digest[32:]

    return key


def _solana_key(keypair: Keypair, path: Optional[str] = None) -> DerivedKey:
    return DerivedKey(
        address=str(keypair.pubkey()),
        private_key=base58.b58encode(bytes(keypair)).decode("ascii"),
        derivation_path=path,
    )


def derive_hd_account(chain_family: str, seed_phrase: str, index: int) -> DerivedKey:
    """
    Derive the account at a zero-based index from a seed phrase.

    Args:
        chain_family: SOLANA or EVM
        seed_phrase: BIP-39 mnemonic
        index: Zero-based derivation index

    Returns:
        DerivedKey with address, private key and path

    Raises:
        InvalidSeed: If the seed phrase is not a valid BIP-39 mnemonic
        ValueError: If the chain family is not supported
    """
    path = derivation_path(chain_family, index)
    phrase = validate_seed_phrase(seed_phrase)

    if chain_family == SOLANA:
        keypair = Keypair.from_seed(slip10_ed25519_key(seed_from_phrase(phrase), path))
        return _solana_key(keypair, path)

    account = Account.from_mnemonic(phrase, account_path=path)
    return DerivedKey(
        address=account.address,
        private_key="0x" + bytes(account.key).hex(),
        derivation_path=path,
    )


def _decode_solana_secret(raw: Union[str, bytes, Sequence[int]]) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if not isinstance(raw, str):
        return bytes(raw)

    text = raw.strip()
    if text.startswith("["):
        return bytes(json.loads(text))
    if re.fullmatch(r"[0-9a-fA-F]{64}|[0-9a-fA-F]{128}", text):
        return bytes.fromhex(text)
    return base58.b58decode(text)


def import_solana_key(raw: Union[str, bytes, Sequence[int]]) -> DerivedKey:
    """
    Decode an imported Solana secret key.

    Accepts a base58 or hex string, a JSON byte array, or raw bytes holding
    either the 64-byte secret (seed followed by public key) or the 32-byte
    seed alone.

    Raises:
        InvalidKeyMaterial: If the input cannot be decoded to a valid keypair
    """
    try:
        secret = _decode_solana_secret(raw)
    except (ValueError, TypeError):
        raise InvalidKeyMaterial("Solana private key is not valid base58, hex or byte array")

    if len(secret) not in (32, 64):
        raise InvalidKeyMaterial(f"Solana private key must be 32 or 64 bytes, got {len(secret)}")

    keypair = Keypair.from_seed(secret[:32])
    if len(secret) == 64 and bytes(keypair.pubkey()) != secret[32:]:
        raise InvalidKeyMaterial("Solana private key does not match its embedded public key")

    return _solana_key(keypair)


def import_evm_key(raw: str) -> DerivedKey:
    """
    Decode an imported secp256k1 private key given as 64 hex characters.

    Raises:
        InvalidKeyMaterial: If the key is malformed or outside the curve order
    """
    if not isinstance(raw, str) or not _HEX_KEY_PATTERN.match(raw.strip()):
        raise InvalidKeyMaterial("EVM private key must be 64 hex characters")

    key_hex = raw.strip()
    if not key_hex.startswith("0x"):
        key_hex = "0x" + key_hex

    if not 0 < int(key_hex, 16) < SECP256K1_ORDER:
        raise InvalidKeyMaterial("EVM private key is outside the secp256k1 curve order")

    account = Account.from_key(key_hex)

    return DerivedKey(address=account.address, private_key=key_hex.lower())


def import_private_key(chain_family: str, raw) -> DerivedKey:
    """
    Decode an imported private key for a chain family.

    Args:
        chain_family: SOLANA or EVM
        raw: Key material as stored in the vault

    Returns:
        DerivedKey for the key

    Raises:
        InvalidKeyMaterial: If the key is malformed
        ValueError: If the chain family is not supported
    """
    if chain_family == SOLANA:
        return import_solana_key(raw)
    if chain_family == EVM:
        return import_evm_key(raw)
    raise ValueError(f"Unsupported chain family: {chain_family}")
