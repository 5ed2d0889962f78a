"""Error taxonomy for the network-call boundary.

Endpoint methods never leak raw web3 exceptions: every failure is converted
into a ``SubmitError`` carrying one ``ErrorKind``. This module is the only
place that looks at error text.
"""

from enum import Enum
from typing import Dict, Tuple

from web3 import Web3
from web3.exceptions import TimeExhausted


class ErrorKind(Enum):
    ALREADY_KNOWN = "already_known"
    REPLACEMENT_UNDERPRICED = "replacement_underpriced"
    NONCE_TOO_LOW = "nonce_too_low"
    TIMEOUT = "timeout"
    PRICE_TOO_LOW = "price_too_low"
    FEE_REJECTED = "fee_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ALREADY_MINTED = "already_minted"
    SOLD_OUT = "sold_out"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class SubmitError(Exception):
    """Raised by endpoint calls, tagged with a classified kind."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


class ConfigError(ValueError):
    """Raised when static configuration is missing or malformed."""


# Revert reasons raised as custom errors only carry the 4-byte selector.
_CUSTOM_ERRORS: Dict[str, ErrorKind] = {
    "InvalidLaunchpadFee()": ErrorKind.FEE_REJECTED,
    "InsufficientFunds()": ErrorKind.INSUFFICIENT_FUNDS,
    "AlreadyMinted()": ErrorKind.ALREADY_MINTED,
    "SoldOut()": ErrorKind.SOLD_OUT,
    "MaxSupplyReached()": ErrorKind.SOLD_OUT,
}
_SELECTORS: Dict[str, ErrorKind] = {
    bytes(Web3.keccak(text=signature)[:4]).hex(): kind
    for signature, kind in _CUSTOM_ERRORS.items()
}

# Order matters: "replacement transaction underpriced" must win over
# the plain "underpriced" price rejection.
_PATTERNS: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.ALREADY_MINTED, ("already minted", "alreadyminted")),
    (ErrorKind.SOLD_OUT, ("sold out", "soldout", "max supply", "exceeds supply", "maxsupplyreached")),
    (ErrorKind.FEE_REJECTED, ("invalidlaunchpadfee", "invalid launchpad fee", "incorrect fee")),
    (ErrorKind.INSUFFICIENT_FUNDS, ("insufficient funds", "insufficientfunds")),
    (ErrorKind.ALREADY_KNOWN, ("already known", "known transaction", "already imported")),
    (ErrorKind.REPLACEMENT_UNDERPRICED, ("replacement transaction underpriced", "replacement underpriced")),
    (ErrorKind.NONCE_TOO_LOW, ("nonce too low", "nonce has already been used")),
    (
        ErrorKind.PRICE_TOO_LOW,
        ("transaction underpriced", "max fee per gas less than block base fee", "fee too low", "feecap"),
    ),
    (ErrorKind.RATE_LIMITED, ("429", "too many requests", "rate limit")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
)


def describe(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a network call onto an ``ErrorKind``."""
    if isinstance(exc, SubmitError):
        return exc.kind
    if isinstance(exc, (TimeExhausted, TimeoutError)):
        return ErrorKind.TIMEOUT

    data = getattr(exc, "data", None)
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        kind = _SELECTORS.get(data[2:10].lower())
        if kind is not None:
            return kind

    text = f"{describe(exc)} {exc}".lower()
    for kind, needles in _PATTERNS:
        if any(needle in text for needle in needles):
            return kind
    return ErrorKind.UNKNOWN
