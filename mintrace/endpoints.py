"""RPC endpoints and the pool that hands them out.

``Endpoint`` is the network-call boundary of the engine: it wraps one
synchronous web3 connection, runs each call on a worker thread of the pool's
executor, and converts every web3 failure into a classified ``SubmitError``.
The executor is sized so every account can sit in a receipt wait and still
leave threads free for sends.
"""

import asyncio
import functools
import itertools
import logging
import random
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional, Sequence

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from .errors import SubmitError, classify, describe
from .models import GasQuote

logger = logging.getLogger("mintrace.endpoints")


class Endpoint:
    supports_push_wait = True

    def __init__(
        self,
        url: str,
        contract_address: str,
        abi: Sequence[dict],
        timeout: float = 15,
        executor: Optional[Executor] = None,
    ) -> None:
        self.url = url
        self.executor = executor
        self.web3 = Web3(Web3.HTTPProvider(url.strip(), request_kwargs={"timeout": timeout}))
        # Most L2s and sidechains carry POA-style extraData
        self.web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.contract = self.web3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=list(abi))
        self._functions = {item.get("name") for item in abi if item.get("type") == "function"}

    def __repr__(self) -> str:
        return f"Endpoint({self.url!r})"

    async def _run(self, fn, *args):
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self.executor, functools.partial(fn, *args))
        except SubmitError:
            raise
        except Exception as e:
            kind = classify(e)
            logger.debug(f"{self.url} -> {kind.value}: {describe(e)}")
            raise SubmitError(kind, describe(e)) from e

    # ---------------------------- fees ----------------------------
    def _fee_data(self) -> GasQuote:
        block = self.web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            # Legacy chain: one price for both fields
            gas_price = self.web3.eth.gas_price
            return GasQuote(gas_price, gas_price)
        priority = self.web3.eth.max_priority_fee
        return GasQuote(base_fee * 2 + priority, priority)

    async def fee_data(self) -> GasQuote:
        return await self._run(self._fee_data)

    # ---------------------------- accounts ----------------------------
    async def get_nonce(self, address: str) -> int:
        return await self._run(self.web3.eth.get_transaction_count, address, "pending")

    async def chain_id(self) -> int:
        return await self._run(lambda: self.web3.eth.chain_id)

    # ---------------------------- transactions ----------------------------
    def _send(self, payload: bytes) -> str:
        return Web3.to_hex(self.web3.eth.send_raw_transaction(payload))

    async def send_raw_transaction(self, payload: bytes) -> str:
        return await self._run(self._send, payload)

    def _wait(self, tx_hash: str, timeout: float, poll_latency: float):
        try:
            return self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=poll_latency)
        except TimeExhausted:
            return None

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_latency: float = 1.0):
        return await self._run(self._wait, tx_hash, timeout, poll_latency)

    def _receipt(self, tx_hash: str):
        try:
            return self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def get_receipt(self, tx_hash: str):
        return await self._run(self._receipt, tx_hash)

    async def estimate_gas(self, tx: dict) -> int:
        return await self._run(self.web3.eth.estimate_gas, tx)

    # ---------------------------- contract reads ----------------------------
    def has_function(self, name: str) -> bool:
        return name in self._functions

    async def call(self, name: str, *args):
        function = getattr(self.contract.functions, name)
        return await self._run(lambda: function(*args).call())


class EndpointPool:
    """Fixed set of endpoints built at startup; ``pick`` spreads the load."""

    def __init__(
        self,
        endpoints: Sequence,
        strategy: str = "random",
        rng: Optional[random.Random] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        if not endpoints:
            raise ValueError("Endpoint pool needs at least one endpoint.")
        if strategy not in ("random", "round_robin"):
            raise ValueError(f"Unknown pick strategy: {strategy}")
        self.endpoints = tuple(endpoints)
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._cycle = itertools.cycle(self.endpoints)
        self.executor = executor

    @classmethod
    def from_urls(cls, urls, contract_address, abi, timeout=15, strategy="random", workers=None):
        """One shared executor for all endpoints, with ``workers`` threads."""
        workers = workers or worker_count(1, len(urls))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mintrace-rpc")
        endpoints = [Endpoint(url, contract_address, abi, timeout, executor=executor) for url in urls]
        return cls(endpoints, strategy=strategy, executor=executor)

    def close(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)

    def __len__(self) -> int:
        return len(self.endpoints)

    def pick(self):
        if self.strategy == "round_robin":
            return next(self._cycle)
        return self._rng.choice(self.endpoints)


def worker_count(accounts: int, endpoints: int = 1) -> int:
    # Each account holds at most one blocking receipt wait plus one other call
    return max(8, accounts * 2 + endpoints)
