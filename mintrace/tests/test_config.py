import json
import os
import tempfile
import unittest
from types import SimpleNamespace
from unittest import mock

from eth_account import Account
from web3 import Web3

from mintrace.config import (
    CONFIG,
    DEFAULT_ABI,
    is_valid_private_key,
    load_contract,
    load_oracle,
    load_private_keys,
    load_proofs,
    load_settings,
    validate_rpc_urls,
)
from mintrace.errors import ConfigError

KEY_A = "0x" + "01" * 32
KEY_B = "02" * 32
CONTRACT = {
    "address": "0x00000000000000000000000000000000000000aa",
    "launchpadFee": "1000000000000000",
    "startTimePhase2": 1700000000,
    "endTimePhase2": 1700003600,
}


class ConfigFiles:
    """Temporary directory holding a key file and a contract file."""

    def __init__(self, keys=(KEY_A,), contract=None) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.keys = os.path.join(self.root, "private_keys.txt")
        self.contract = os.path.join(self.root, "contract.json")
        self.env = os.path.join(self.root, ".env")
        with open(self.keys, "w") as file:
            file.write("\n".join(keys))
        with open(self.contract, "w") as file:
            json.dump(contract if contract is not None else CONTRACT, file)

    def cleanup(self) -> None:
        self._tmp.cleanup()


class ValidationTests(unittest.TestCase):
    def test_private_key_normalized(self) -> None:
        self.assertEqual(is_valid_private_key(KEY_B), "0x" + KEY_B)
        self.assertEqual(is_valid_private_key("  " + KEY_A + "\n"), KEY_A)

    def test_private_key_rejections(self) -> None:
        self.assertIsNone(is_valid_private_key(""))
        self.assertIsNone(is_valid_private_key("# comment"))
        self.assertIsNone(is_valid_private_key("0x1234"))
        self.assertIsNone(is_valid_private_key("0x" + "zz" * 32))

    def test_rpc_urls_filtered_and_deduplicated(self) -> None:
        urls = validate_rpc_urls(["https://a.example", " ws://b.example", "", "https://a.example", "http://c"])

        self.assertEqual(urls, ["https://a.example", "http://c"])


class LoadPrivateKeysTests(unittest.TestCase):
    def setUp(self) -> None:
        self.files = ConfigFiles(keys=("# wallets", KEY_A, "not-a-key", KEY_B, KEY_A))
        self.addCleanup(self.files.cleanup)

    def test_keys_from_file_deduplicated(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            keys = load_private_keys(self.files.keys)

        self.assertEqual(keys, (KEY_A, "0x" + KEY_B))

    def test_env_key_comes_first(self) -> None:
        env_key = "0x" + "03" * 32
        with mock.patch.dict(os.environ, {"PRIVATE_KEY": env_key}, clear=True):
            keys = load_private_keys(self.files.keys)

        self.assertEqual(keys[0], env_key)
        self.assertEqual(len(keys), 3)

    def test_no_keys_is_config_error(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                load_private_keys(os.path.join(self.files.root, "missing.txt"))


class LoadContractTests(unittest.TestCase):
    def _load(self, contract):
        files = ConfigFiles(contract=contract)
        self.addCleanup(files.cleanup)
        return load_contract(files.contract)

    def test_valid_contract(self) -> None:
        self.assertEqual(self._load(CONTRACT)["address"], CONTRACT["address"])

    def test_missing_fields(self) -> None:
        with self.assertRaises(ConfigError):
            self._load({"address": CONTRACT["address"]})

    def test_bad_address(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(dict(CONTRACT, address="0x1234"))

    def test_window_must_be_ordered(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(dict(CONTRACT, endTimePhase2=CONTRACT["startTimePhase2"]))

    def test_missing_file(self) -> None:
        with self.assertRaises(ConfigError):
            load_contract("/nonexistent/contract.json")

    def test_non_numeric_fee(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            self._load(dict(CONTRACT, launchpadFee="0.001 ETH"))

        self.assertIn("launchpadFee", str(ctx.exception))

    def test_null_start_time(self) -> None:
        with self.assertRaises(ConfigError):
            self._load(dict(CONTRACT, startTimePhase2=None))


class LoadSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.files = ConfigFiles(keys=(KEY_A, KEY_B))
        self.addCleanup(self.files.cleanup)

    def _settings(self, env=None):
        with mock.patch.dict(os.environ, env or {}, clear=True):
            return load_settings(self.files.env, self.files.keys, self.files.contract)

    def test_defaults(self) -> None:
        settings = self._settings()

        self.assertEqual(settings.rpc_urls, (CONFIG["RPC_URLS"],))
        self.assertEqual(settings.contract_address, Web3.to_checksum_address(CONTRACT["address"]))
        self.assertEqual(settings.launchpad_fee, 10**15)
        self.assertEqual(settings.start_time, CONTRACT["startTimePhase2"])
        self.assertEqual(settings.abi, tuple(DEFAULT_ABI))
        self.assertEqual(settings.mint_function, "mintPhase2")
        self.assertIsNone(settings.chain_id)
        self.assertEqual(len(settings.private_keys), 2)
        self.assertEqual(settings.initial_band, (130, 160))

    def test_env_overrides(self) -> None:
        settings = self._settings(
            {
                "RPC_URLS": "https://one.example, https://two.example",
                "MAX_FEE_GWEI": "2",
                "DEFAULT_FEE_GWEI": "9",
                "GAS_BAND_ESCALATED": "200-250",
                "CHAIN_ID": "8453",
            }
        )

        self.assertEqual(settings.rpc_urls, ("https://one.example", "https://two.example"))
        self.assertEqual(settings.max_fee_per_gas, Web3.to_wei(2, "gwei"))
        # Default quote never exceeds the ceiling
        self.assertEqual(settings.default_quote.max_fee_per_gas, Web3.to_wei(2, "gwei"))
        self.assertEqual(settings.escalated_band, (200, 250))
        self.assertEqual(settings.chain_id, 8453)

    def test_dotenv_file_is_read(self) -> None:
        with open(self.files.env, "w") as file:
            file.write("RECEIPT_TIMEOUT=12\n")

        settings = self._settings()

        self.assertEqual(settings.receipt_timeout, 12.0)

    def test_bad_band_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            self._settings({"GAS_BAND_INITIAL": "fast"})

    def test_no_valid_rpc_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            self._settings({"RPC_URLS": "ws://only.example"})

    def test_bad_quantity_is_config_error(self) -> None:
        with open(self.files.contract, "w") as file:
            json.dump(dict(CONTRACT, quantity="two"), file)

        with self.assertRaises(ConfigError):
            self._settings()

    def test_bad_chain_id_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            self._settings({"CHAIN_ID": "base"})

    def test_keys_hidden_from_repr(self) -> None:
        settings = self._settings()

        self.assertNotIn(KEY_B, repr(settings))
        self.assertEqual(Account.from_key(settings.private_keys[0]).address, Account.from_key(KEY_A).address)


class LoadProofsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = os.path.join(self._tmp.name, "proofs.json")

    def _write(self, text: str) -> None:
        with open(self.path, "w") as file:
            file.write(text)

    async def test_valid_file_loads(self) -> None:
        address = "0x00000000000000000000000000000000000000Bb"
        self._write(json.dumps({address: ["0x" + "ab" * 32]}))

        oracle = load_proofs(self.path)

        self.assertEqual(await oracle.get_proof(address.lower()), (b"\xab" * 32,))

    def test_missing_file(self) -> None:
        with self.assertRaises(ConfigError):
            load_proofs(os.path.join(self._tmp.name, "missing.json"))

    def test_malformed_json(self) -> None:
        self._write("{not json")

        with self.assertRaises(ConfigError):
            load_proofs(self.path)

    def test_list_instead_of_map(self) -> None:
        self._write(json.dumps([["0x" + "ab" * 32]]))

        with self.assertRaises(ConfigError):
            load_proofs(self.path)

    def test_short_proof_node(self) -> None:
        self._write(json.dumps({"0x00000000000000000000000000000000000000bb": ["0x1234"]}))

        with self.assertRaises(ConfigError):
            load_proofs(self.path)

    def test_oracle_uses_proofs_file_when_set(self) -> None:
        self._write(json.dumps({}))

        oracle = load_oracle(SimpleNamespace(proofs_file=self.path, open_proof=()))

        self.assertFalse(getattr(oracle, "admits_all", False))

    def test_malformed_open_proof(self) -> None:
        with self.assertRaises(ConfigError):
            load_oracle(SimpleNamespace(proofs_file=None, open_proof=("0x12",)))
