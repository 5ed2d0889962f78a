import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from .eligibility import OpenProofOracle, StaticProofOracle
from .errors import ConfigError
from .models import GasQuote

logger = logging.getLogger("mintrace.config")

# ======================== Configuration ========================
CONFIG = {
    "RPC_URLS": "https://mainnet.base.org",
    "ENV_FILE": ".env",
    "PRIVATE_KEY_FILE": "private_keys.txt",
    "CONTRACT_FILE": "contract.json",
    "PROOFS_FILE": "",
    "RPC_TIMEOUT": 15,  # seconds
    "RECEIPT_TIMEOUT": 60,  # seconds
    "POLL_INTERVAL": 1.0,
    "GAS_LIMIT": 250000,
    "MAX_FEE_GWEI": 50,
    "MAX_PRIORITY_GWEI": 5,
    "DEFAULT_FEE_GWEI": 0.05,
    "DEFAULT_PRIORITY_GWEI": 0.02,
    "GAS_BAND_INITIAL": (130, 160),  # percent
    "GAS_BAND_ESCALATED": (220, 300),  # percent
    "TRANSIENT_WAIT": 2.0,
    "BACKOFF": {"BASE": 1.2, "FACTOR": 1.4, "CAP": 15.0, "JITTER": 1.2},
    "STAGGER": {"JITTER_MS": 500, "STEP_MS": 50},
    "REFRESH_INTERVAL": 5,  # seconds, gas refresh during countdown
    "LEAD_SECONDS": 0,  # start this many seconds before the window opens
}

DEFAULT_MINT_FUNCTION = "mintPhase2"

DEFAULT_ABI = [
    {
        "inputs": [
            {"internalType": "bytes32[]", "name": "_merkleProof", "type": "bytes32[]"},
            {"internalType": "uint256", "name": "_quantity", "type": "uint256"},
        ],
        "name": "mintPhase2",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "launchpadFee",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class Settings:
    private_keys: Tuple[str, ...] = field(repr=False)
    rpc_urls: Tuple[str, ...]
    contract_address: str
    abi: tuple
    launchpad_fee: int
    start_time: int
    end_time: int
    mint_function: str = DEFAULT_MINT_FUNCTION
    quantity: int = 1
    chain_id: Optional[int] = None
    gas_limit: int = CONFIG["GAS_LIMIT"]
    max_fee_per_gas: int = Web3.to_wei(CONFIG["MAX_FEE_GWEI"], "gwei")
    max_priority_fee_per_gas: int = Web3.to_wei(CONFIG["MAX_PRIORITY_GWEI"], "gwei")
    default_quote: GasQuote = GasQuote(
        Web3.to_wei(CONFIG["DEFAULT_FEE_GWEI"], "gwei"),
        Web3.to_wei(CONFIG["DEFAULT_PRIORITY_GWEI"], "gwei"),
    )
    initial_band: Tuple[int, int] = CONFIG["GAS_BAND_INITIAL"]
    escalated_band: Tuple[int, int] = CONFIG["GAS_BAND_ESCALATED"]
    rpc_timeout: float = CONFIG["RPC_TIMEOUT"]
    receipt_timeout: float = CONFIG["RECEIPT_TIMEOUT"]
    poll_interval: float = CONFIG["POLL_INTERVAL"]
    refresh_interval: float = CONFIG["REFRESH_INTERVAL"]
    lead_seconds: float = CONFIG["LEAD_SECONDS"]
    proofs_file: Optional[str] = None
    open_proof: Tuple[str, ...] = ()


# ======================== Validation helpers ========================
def validate_rpc_urls(urls):
    """Keep only http(s) URLs, preserving order and dropping duplicates."""
    valid_urls = []
    for url in urls:
        url = url.strip()
        if url and url.startswith("http"):
            if url not in valid_urls:
                valid_urls.append(url)
        elif url:
            logger.warning(f"Invalid RPC URL ignored: {url}")
    return valid_urls


def is_valid_private_key(key):
    """Validate a private key format and return standardized key"""
    if not key:
        return None
    key = key.strip()
    if not key or key.startswith("#"):
        return None

    if not key.startswith("0x"):
        key = "0x" + key
    if len(key) != 66:
        return None

    try:
        Account.from_key(key)
    except Exception:
        return None
    return key


def load_private_keys(key_file=None):
    """Collect keys from PRIVATE_KEY and the key file, one wallet per address."""
    candidates = []
    env_key = os.getenv("PRIVATE_KEY")
    if env_key:
        candidates.extend(env_key.split(","))

    key_file = key_file or CONFIG["PRIVATE_KEY_FILE"]
    if os.path.exists(key_file):
        with open(key_file, "r") as file:
            candidates.extend(line.strip() for line in file.readlines())
    else:
        logger.info(f"Key file {key_file} not found, using PRIVATE_KEY only")

    keys = []
    seen = set()
    for candidate in candidates:
        valid_key = is_valid_private_key(candidate)
        if valid_key is None:
            if candidate.strip() and not candidate.strip().startswith("#"):
                logger.warning("Invalid key format or length skipped")
            continue
        address = Account.from_key(valid_key).address
        if address in seen:
            continue
        seen.add(address)
        keys.append(valid_key)

    if not keys:
        raise ConfigError("No valid private keys found in either .env or private_keys.txt")
    return tuple(keys)


def _as_int(name, raw):
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def load_contract(contract_file=None):
    contract_file = contract_file or CONFIG["CONTRACT_FILE"]
    try:
        with open(contract_file, "r") as file:
            data = json.load(file)
    except FileNotFoundError as e:
        raise ConfigError(f"Contract file {contract_file} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Contract file {contract_file} is not valid JSON: {e}") from e

    missing = [k for k in ("address", "launchpadFee", "startTimePhase2", "endTimePhase2") if k not in data]
    if missing:
        raise ConfigError(f"Contract file is missing: {', '.join(missing)}")
    if not Web3.is_address(data["address"]):
        raise ConfigError(f"Invalid contract address: {data['address']}")

    fee = _as_int("launchpadFee", data["launchpadFee"])
    if fee < 0:
        raise ConfigError("Invalid launchpad fee in config")
    start = _as_int("startTimePhase2", data["startTimePhase2"])
    end = _as_int("endTimePhase2", data["endTimePhase2"])
    if end <= start:
        raise ConfigError("endTimePhase2 must be after startTimePhase2")
    return data


def _env(name, default, cast=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


def _env_band(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        low, high = (int(part) for part in raw.split("-", 1))
    except ValueError as e:
        raise ConfigError(f"{name} must look like 130-160, got {raw!r}") from e
    if low <= 0 or high < low:
        raise ConfigError(f"{name} must be a positive increasing range")
    return (low, high)


def load_settings(env_file=None, key_file=None, contract_file=None, proofs_file=None):
    """Read .env, key file and contract file into a frozen ``Settings``."""
    env_file = env_file or CONFIG["ENV_FILE"]
    if os.path.exists(env_file):
        load_dotenv(env_file)

    rpc_urls = validate_rpc_urls(os.getenv("RPC_URLS", CONFIG["RPC_URLS"]).split(","))
    if not rpc_urls:
        raise ConfigError("No valid RPC URL found in RPC_URLS")

    contract = load_contract(contract_file or os.getenv("CONTRACT_FILE"))
    keys = load_private_keys(key_file or os.getenv("PRIVATE_KEY_FILE"))

    to_wei = lambda gwei: Web3.to_wei(gwei, "gwei")  # noqa: E731
    max_fee = to_wei(_env("MAX_FEE_GWEI", CONFIG["MAX_FEE_GWEI"]))
    max_priority = to_wei(_env("MAX_PRIORITY_GWEI", CONFIG["MAX_PRIORITY_GWEI"]))
    default_quote = GasQuote(
        min(to_wei(_env("DEFAULT_FEE_GWEI", CONFIG["DEFAULT_FEE_GWEI"])), max_fee),
        min(to_wei(_env("DEFAULT_PRIORITY_GWEI", CONFIG["DEFAULT_PRIORITY_GWEI"])), max_priority),
    )

    chain_id = contract.get("chainId") or os.getenv("CHAIN_ID")
    if chain_id:
        chain_id = _as_int("chainId", chain_id)

    return Settings(
        private_keys=keys,
        rpc_urls=tuple(rpc_urls),
        contract_address=Web3.to_checksum_address(contract["address"]),
        abi=tuple(contract.get("abi") or DEFAULT_ABI),
        launchpad_fee=_as_int("launchpadFee", contract["launchpadFee"]),
        start_time=_as_int("startTimePhase2", contract["startTimePhase2"]),
        end_time=_as_int("endTimePhase2", contract["endTimePhase2"]),
        mint_function=contract.get("mintFunction", DEFAULT_MINT_FUNCTION),
        quantity=_as_int("quantity", contract.get("quantity", 1)),
        chain_id=chain_id or None,
        gas_limit=_env("GAS_LIMIT", CONFIG["GAS_LIMIT"], int),
        max_fee_per_gas=max_fee,
        max_priority_fee_per_gas=max_priority,
        default_quote=default_quote,
        initial_band=_env_band("GAS_BAND_INITIAL", CONFIG["GAS_BAND_INITIAL"]),
        escalated_band=_env_band("GAS_BAND_ESCALATED", CONFIG["GAS_BAND_ESCALATED"]),
        rpc_timeout=_env("RPC_TIMEOUT", CONFIG["RPC_TIMEOUT"]),
        receipt_timeout=_env("RECEIPT_TIMEOUT", CONFIG["RECEIPT_TIMEOUT"]),
        poll_interval=_env("POLL_INTERVAL", CONFIG["POLL_INTERVAL"]),
        refresh_interval=_env("REFRESH_INTERVAL", CONFIG["REFRESH_INTERVAL"]),
        lead_seconds=_env("LEAD_SECONDS", CONFIG["LEAD_SECONDS"]),
        proofs_file=proofs_file or os.getenv("PROOFS_FILE") or CONFIG["PROOFS_FILE"] or None,
        open_proof=tuple(contract.get("openProof", ())),
    )


def load_proofs(path):
    """Read a JSON map of address -> proof nodes into a ``StaticProofOracle``."""
    try:
        with open(path, "r") as file:
            data = json.load(file)
    except FileNotFoundError as e:
        raise ConfigError(f"Proofs file {path} not found") from e
    except OSError as e:
        raise ConfigError(f"Proofs file {path} could not be read: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Proofs file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Proofs file {path} must map addresses to proof lists")
    try:
        return StaticProofOracle(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Proofs file {path} has a malformed proof: {e}") from e


def load_oracle(settings):
    """Pick the proof source for a run: the proofs file if set, else the open proof."""
    if settings.proofs_file:
        return load_proofs(settings.proofs_file)
    try:
        return OpenProofOracle(settings.open_proof)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"openProof in the contract file is malformed: {e}") from e
