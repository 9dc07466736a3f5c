"""
Decryption of browser-passworder style vault envelopes.

An envelope is a JSON object with base64 "data" (AES-GCM cipher text with
the tag appended), "iv" and "salt", and optional "keyMetadata" naming the
PBKDF2 iteration count. The key is PBKDF2-HMAC-SHA256 of the password.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionFailed

DEFAULT_ITERATIONS = 10000
KEY_SIZE = 32  # AES-256


@dataclass
class EncryptedEnvelope:
    """Cipher text plus the parameters needed to derive its key."""

    cipher_text: bytes
    iv: bytes
    salt: bytes
    iterations: int = DEFAULT_ITERATIONS
    algorithm: str = "PBKDF2"

    @classmethod
    def from_value(cls, value: Union[str, bytes, Dict[str, Any]]) -> "EncryptedEnvelope":
        """
        Parse an envelope from a stored JSON string or decoded object.

        Raises:
            DecryptionFailed: If the value is not a well-formed envelope
        """
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise DecryptionFailed("Encrypted envelope is not valid JSON") from e
        if not isinstance(value, dict):
            raise DecryptionFailed("Encrypted envelope must be an object")

        try:
            cipher_text = base64.b64decode(value["data"])
            iv = base64.b64decode(value["iv"])
            salt = base64.b64decode(value["salt"])
        except (KeyError, TypeError, binascii.Error) as e:
            raise DecryptionFailed(f"Encrypted envelope is missing or corrupt: {e}") from e

        metadata = value.get("keyMetadata") or {}
        params = metadata.get("params") or {}
        return cls(
            cipher_text=cipher_text,
            iv=iv,
            salt=salt,
            iterations=int(params.get("iterations", DEFAULT_ITERATIONS)),
            algorithm=metadata.get("algorithm", "PBKDF2"),
        )


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive the AES key for a password and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def decrypt(password: str, envelope: Union[EncryptedEnvelope, str, bytes, Dict[str, Any]]) -> Any:
    """
    Decrypt an envelope and decode its JSON payload.

    Args:
        password: Vault password
        envelope: EncryptedEnvelope or its stored representation

    Returns:
        The decoded JSON payload, or the plain string if it is not JSON

    Raises:
        DecryptionFailed: On a wrong password or a corrupted envelope
    """
    if not isinstance(envelope, EncryptedEnvelope):
        envelope = EncryptedEnvelope.from_value(envelope)

    if envelope.algorithm.upper() != "PBKDF2":
        raise DecryptionFailed(f"Unsupported key derivation algorithm: {envelope.algorithm}")

    key = derive_key(password, envelope.salt, envelope.iterations)
    try:
        plaintext = AESGCM(key).decrypt(envelope.iv, envelope.cipher_text, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionFailed("Incorrect password or corrupted data") from e

    text = plaintext.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
