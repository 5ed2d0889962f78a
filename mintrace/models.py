"""Data structures shared by the mint engine."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount


class Eligibility(Enum):
    UNKNOWN = "unknown"
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"


class Outcome(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class MintAccount:
    """One wallet: public address plus its local signer."""

    address: str
    signer: LocalAccount = field(repr=False, compare=False)

    @classmethod
    def from_key(cls, private_key: str) -> "MintAccount":
        signer = Account.from_key(private_key)
        return cls(address=signer.address, signer=signer)


@dataclass(frozen=True)
class GasQuote:
    """EIP-1559 fee pair in wei."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def __post_init__(self) -> None:
        if self.max_fee_per_gas < 0 or self.max_priority_fee_per_gas < 0:
            raise ValueError("Gas quote values must be non-negative.")

    def as_tx_fields(self) -> dict:
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


@dataclass(frozen=True)
class SignedSubmission:
    """A single signing attempt. Re-signing produces a new instance."""

    account_address: str
    signed_payload: bytes = field(repr=False)
    tx_hash: str
    gas_quote: GasQuote
    nonce: int


@dataclass
class AccountResult:
    status: str = "Waiting"
    last_tx_hash: Optional[str] = None
    attempts: int = 0
    success: bool = False
    eligible: Eligibility = Eligibility.UNKNOWN
    eligibility_source: Optional[str] = None
    last_error: Optional[str] = None
    terminal: bool = False
    gas_quote: Optional[GasQuote] = None

    def copy(self) -> "AccountResult":
        return replace(self)


@dataclass(frozen=True)
class FleetSummary:
    eligible_count: int
    success_count: int
    total_count: int


ProofNodes = Tuple[bytes, ...]
