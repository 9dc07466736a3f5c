"""
Pytest configuration and shared fixtures for vaultscan tests.
"""

import base64
import json
import os

import pytest
import responses
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from vaultscan.lib.vault_crypto import derive_key

# Well-known development mnemonic (Hardhat / Anvil default accounts)
TEST_MNEMONIC = "test test test test test test test test test test test junk"
TEST_EVM_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_EVM_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
TEST_EVM_KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

TEST_PASSWORD = "correct horse battery staple"
TEST_ITERATIONS = 1000

SOLANA_RPC = "https://solana.test"
SOLANA_RPC_BACKUP = "https://solana-backup.test"
COINGECKO_URL = "https://prices.test/api/v3"


def encrypt_payload(password, payload, iterations=TEST_ITERATIONS):
    """Encrypt a payload the way browser-passworder does and return the envelope JSON string."""
    salt = os.urandom(32)
    iv = os.urandom(16)
    key = derive_key(password, salt, iterations)
    data = json.dumps(payload).encode("utf-8")
    cipher_text = AESGCM(key).encrypt(iv, data, None)
    return json.dumps(
        {
            "data": base64.b64encode(cipher_text).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "salt": base64.b64encode(salt).decode("ascii"),
            "keyMetadata": {"algorithm": "PBKDF2", "params": {"iterations": iterations}},
        }
    )


def write_leveldb(path, entries, padding=0):
    """
    Write decoded entries as JSON values into a new LevelDB directory.

    padding adds that many 1 KiB noise entries and compacts them into
    table files.
    """
    import plyvel

    db = plyvel.DB(str(path), create_if_missing=True)
    for key, value in entries.items():
        db.put(key.encode("utf-8"), json.dumps(value).encode("utf-8"))
    for index in range(padding):
        db.put(f"noise-{index:05d}".encode("ascii"), os.urandom(1024))
    db.compact_range()
    db.close()


def corrupt_table_files(path):
    """Flip bytes across the data blocks of every LevelDB table file."""
    tables = [name for name in os.listdir(path) if name.endswith((".ldb", ".sst"))]
    assert tables, "no table files to corrupt"
    for name in tables:
        table = os.path.join(path, name)
        with open(table, "rb") as f:
            data = bytearray(f.read())
        for offset in range(len(data) // 8, len(data) // 2, 64):
            data[offset] ^= 0xFF
        with open(table, "wb") as f:
            f.write(data)


def rpc_callback(handlers, calls=None):
    """
    Build a responses callback answering JSON-RPC requests by method.

    handlers maps a method name to a result value, or to a callable taking
    the params and returning either a result or a (status, body) tuple.
    """

    def callback(request):
        payload = json.loads(request.body)
        method = payload["method"]
        if calls is not None:
            calls.append(method)
        handler = handlers.get(method)
        if handler is None:
            body = {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "Method not found"}}
            return (200, {}, json.dumps(body))
        result = handler(payload["params"]) if callable(handler) else handler
        if isinstance(result, tuple):
            status, body = result
            return (status, {}, json.dumps(body))
        return (200, {}, json.dumps({"jsonrpc": "2.0", "id": payload["id"], "result": result}))

    return callback


@pytest.fixture
def sample_evm_address():
    """EVM address of the test mnemonic at index 0."""
    return TEST_EVM_ADDRESS_0


@pytest.fixture
def sample_solana_address():
    """Sample Solana wallet address for testing."""
    return "GKvqsuNcnwWqPzzuhLmGi4rzzh55FhJtGizkhHaEJqiV"


@pytest.fixture
def solana_hd_addresses():
    """Solana addresses of the test mnemonic at indices 0 and 1."""
    from vaultscan.lib.config import SOLANA
    from vaultscan.lib.key_derivation import derive_hd_account

    return [derive_hd_account(SOLANA, TEST_MNEMONIC, i).address for i in range(2)]


@pytest.fixture
def phantom_entries(solana_hd_addresses):
    """Decoded Phantom vault entries with two HD accounts on one encrypted seed."""
    return {
        ".phantom-labs.vault.accounts": {
            "accounts": [
                {
                    "type": "seed",
                    "seedIdentifier": "seed-1",
                    "derivationIndex": index,
                    "chains": {
                        "solana": {"publicKey": address},
                        "ethereum": {"publicKey": TEST_EVM_ADDRESS_0 if index == 0 else TEST_EVM_ADDRESS_1},
                    },
                }
                for index, address in enumerate(solana_hd_addresses)
            ]
        },
        ".phantom-labs.vault.seed.seed-1": encrypt_payload(TEST_PASSWORD, TEST_MNEMONIC),
    }


@pytest.fixture
def metamask_entries():
    """Decoded MetaMask state with one HD keyring of two accounts."""
    vault = encrypt_payload(
        TEST_PASSWORD,
        [{"type": "HD Key Tree", "data": {"mnemonic": TEST_MNEMONIC, "numberOfAccounts": 2}}],
    )
    accounts = {
        f"id-{i}": {
            "address": address.lower(),
            "metadata": {"keyring": {"type": "HD Key Tree"}},
            "options": {"entropySource": "entropy-1"},
        }
        for i, address in enumerate([TEST_EVM_ADDRESS_0, TEST_EVM_ADDRESS_1])
    }
    return {
        "data": {
            "KeyringController": {"vault": vault},
            "AccountsController": {"internalAccounts": {"accounts": accounts}},
        }
    }


@pytest.fixture
def mocked_responses():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps
