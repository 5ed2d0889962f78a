"""In-memory stand-ins for RPC endpoints, shared by the async tests."""

import itertools
import time

from web3 import Web3

from mintrace.builder import TransactionBuilder
from mintrace.config import DEFAULT_ABI
from mintrace.eligibility import EligibilityCache, OpenProofOracle
from mintrace.errors import ErrorKind, SubmitError
from mintrace.fleet import MintWindow
from mintrace.gas import GasPricer
from mintrace.machine import AccountRunner, RetryPolicy
from mintrace.models import GasQuote, MintAccount
from mintrace.status import StatusBoard
from mintrace.watcher import SubmissionWatcher

CONTRACT = "0x00000000000000000000000000000000000000AA"
CHAIN_ID = 8453
LAUNCHPAD_FEE = 10**15
GWEI = 10**9

FAST_POLICY = RetryPolicy(
    receipt_timeout=0.05,
    transient_wait=0.01,
    backoff_base=0.01,
    backoff_factor=1.0,
    backoff_cap=0.02,
    backoff_jitter=0.0,
    estimate_gas=False,
)


def make_account(index: int = 1) -> MintAccount:
    return MintAccount.from_key("0x" + f"{index:064x}")


def open_window(seconds: float = 30) -> MintWindow:
    now = time.time()
    return MintWindow(now - 1, now + seconds)


def error(kind: ErrorKind, message: str = "") -> SubmitError:
    return SubmitError(kind, message or kind.value)


class FakeEndpoint:
    """Scripted endpoint.

    ``send_script`` items are consumed one per send: ``None`` accepts, an
    exception is raised, a callable is called with the endpoint (and may
    raise). When the script runs out, ``reject_all`` is raised if set.
    ``receipts`` items are receipt statuses (1, 0, or None for "not yet").
    """

    def __init__(
        self,
        fee=GasQuote(2 * GWEI, GWEI // 10),
        nonce=0,
        send_script=(),
        reject_all=None,
        receipts=(),
        views=None,
        supports_push_wait=True,
        fee_error=None,
    ) -> None:
        self.url = "fake://endpoint"
        self.fee = fee
        self.fee_error = fee_error
        self.nonce = nonce
        self.send_script = list(send_script)
        self.reject_all = reject_all
        self.receipts = list(receipts)
        self.views = dict(views or {})
        self.supports_push_wait = supports_push_wait
        self.sent = []
        self.fee_calls = 0
        self.landed = {}
        self.accepted = set()

    async def fee_data(self) -> GasQuote:
        self.fee_calls += 1
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee

    async def get_nonce(self, address: str) -> int:
        return self.nonce

    async def chain_id(self) -> int:
        return CHAIN_ID

    async def send_raw_transaction(self, payload: bytes) -> str:
        self.sent.append(payload)
        tx_hash = Web3.to_hex(Web3.keccak(payload))
        try:
            if self.send_script:
                step = self.send_script.pop(0)
            elif self.reject_all is not None:
                raise self.reject_all
            else:
                step = None
            if isinstance(step, Exception):
                raise step
            if callable(step):
                step(self)
        except SubmitError as e:
            if e.kind in (ErrorKind.ALREADY_KNOWN, ErrorKind.REPLACEMENT_UNDERPRICED):
                self.accepted.add(tx_hash)
            raise
        self.accepted.add(tx_hash)
        return tx_hash

    def _next_receipt(self, tx_hash: str):
        if tx_hash not in self.accepted:
            return None
        status = self.receipts.pop(0) if self.receipts else 1
        if status is None:
            return None
        # A mined transaction consumes its nonce, reverted or not
        self.nonce += 1
        self.landed[tx_hash] = status
        return {"status": status, "transactionHash": tx_hash}

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_latency: float = 1.0):
        return self._next_receipt(tx_hash)

    async def get_receipt(self, tx_hash: str):
        if tx_hash in self.landed:
            return {"status": self.landed[tx_hash], "transactionHash": tx_hash}
        return self._next_receipt(tx_hash)

    async def estimate_gas(self, tx: dict) -> int:
        return 150000

    def has_function(self, name: str) -> bool:
        return name in self.views

    async def call(self, name: str, *args):
        value = self.views[name]
        if isinstance(value, Exception):
            raise value
        return value(*args) if callable(value) else value


class FakePool:
    def __init__(self, *endpoints) -> None:
        self.endpoints = endpoints
        self._cycle = itertools.cycle(endpoints)

    def __len__(self) -> int:
        return len(self.endpoints)

    def pick(self):
        return next(self._cycle)


def make_builder() -> TransactionBuilder:
    return TransactionBuilder(CONTRACT, DEFAULT_ABI, CHAIN_ID, LAUNCHPAD_FEE, 250000)


def make_pricer(pool, max_fee=100 * GWEI, max_priority=5 * GWEI, rng=None) -> GasPricer:
    return GasPricer(pool, max_fee, max_priority, GasQuote(GWEI, GWEI // 100), rng=rng)


def make_runner(endpoint, account=None, window=None, board=None, oracle=None, policy=FAST_POLICY, cache=None):
    pool = FakePool(endpoint)
    board = board if board is not None else StatusBoard()
    cache = cache or EligibilityCache(oracle or OpenProofOracle(), pool)
    return AccountRunner(
        account or make_account(),
        board,
        cache,
        make_pricer(pool),
        make_builder(),
        SubmissionWatcher(receipt_timeout=policy.receipt_timeout, poll_interval=0.01),
        pool,
        window or open_window(),
        policy,
    )
