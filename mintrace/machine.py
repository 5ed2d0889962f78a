"""Per-account mint state machine.

One ``AccountRunner`` drives one wallet from eligibility to a terminal state.
Operations for an account are strictly sequential: there is never more than
one payload of the same account in flight.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ErrorKind, SubmitError, describe
from .gas import PremiumTier
from .logs import short_address
from .models import Eligibility, GasQuote, MintAccount, Outcome, SignedSubmission

logger = logging.getLogger("mintrace.machine")


class Phase(Enum):
    IDLE = "idle"
    CHECKING_ELIGIBILITY = "checking_eligibility"
    INELIGIBLE = "ineligible"
    PRICING_GAS = "pricing_gas"
    BUILDING = "building"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUCCESS = "success"
    FAILED = "failed"
    WINDOW_CLOSED = "window_closed"


TERMINAL_PHASES = frozenset({Phase.INELIGIBLE, Phase.SUCCESS, Phase.FAILED, Phase.WINDOW_CLOSED})

STATUS_LABELS = {
    Phase.IDLE: "Waiting",
    Phase.CHECKING_ELIGIBILITY: "Checking eligibility...",
    Phase.INELIGIBLE: "Not eligible",
    Phase.PRICING_GAS: "Getting gas price...",
    Phase.BUILDING: "Building transaction...",
    Phase.SIGNING: "Signing transaction...",
    Phase.SUBMITTING: "Sending transaction...",
    Phase.AWAITING_CONFIRMATION: "Transaction sent",
    Phase.SUCCESS: "MINT SUCCESS!",
    Phase.FAILED: "Failed",
    Phase.WINDOW_CLOSED: "Mint window closed",
}
# Minted flags read after balanceOf for an "already done" short-circuit, in order
# Contract views probed for an "already done" short-circuit, in order
MINTED_VIEWS = ("hasMinted", "alreadyMinted", "minted")


@dataclass(frozen=True)
class RetryPolicy:
    receipt_timeout: float = 60.0
    transient_wait: float = 2.0
    backoff_base: float = 1.2
    backoff_factor: float = 1.4
    backoff_cap: float = 15.0
    backoff_jitter: float = 1.2
    estimate_gas: bool = True
    fee_bump_percent: int = 110

    def backoff(self, failures: int, rng: random.Random) -> float:
        exponent = max(1, failures) - 1
        delay = min(self.backoff_base * self.backoff_factor ** exponent, self.backoff_cap)
        return delay + rng.uniform(0, self.backoff_jitter)


class AccountRunner:
    def __init__(
        self,
        account: MintAccount,
        board,
        cache,
        pricer,
        builder,
        watcher,
        pool,
        window,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.account = account
        self.address = account.address
        self.board = board
        self.cache = cache
        self.pricer = pricer
        self.builder = builder
        self.watcher = watcher
        self.pool = pool
        self.window = window
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()

        self.phase = Phase.IDLE
        self.tier = PremiumTier.INITIAL
        self.fee = builder.launchpad_fee
        self.base_quote: Optional[GasQuote] = None
        self.submission: Optional[SignedSubmission] = None
        self._failures = 0
        board.register(self.address)

    # ======================== board helpers ========================
    def _set(self, phase: Optional[Phase] = None, **fields) -> None:
        if phase is not None:
            self.phase = phase
            fields.setdefault("status", STATUS_LABELS[phase])
        self.board.update(self.address, **fields)

    def _finish(self, phase: Phase, **fields) -> Phase:
        self._set(phase, terminal=True, **fields)
        logger.info(f"{short_address(self.address)} finished: {self.board.get(self.address).status}")
        return phase

    def _succeed(self, status: str) -> Phase:
        return self._finish(Phase.SUCCESS, success=True, status=status)

    async def _pause(self, seconds: float) -> None:
        await self.window.sleep(seconds)

    async def _backoff(self) -> None:
        self._failures += 1
        await self._pause(self.policy.backoff(self._failures, self._rng))

    def mark_window_closed(self) -> None:
        if not self.board.get(self.address).terminal:
            self._finish(Phase.WINDOW_CLOSED)

    # ======================== eligibility ========================
    async def check_eligibility(self) -> bool:
        cached = self.cache.cached(self.address)
        if cached is None:
            self._set(Phase.CHECKING_ELIGIBILITY)
        eligible = await self.cache.is_eligible(self.address)
        self._set(
            eligible=Eligibility.ELIGIBLE if eligible else Eligibility.INELIGIBLE,
            eligibility_source=self.cache.source(self.address),
            status="ELIGIBLE" if eligible else STATUS_LABELS[Phase.INELIGIBLE],
        )
        return eligible

    async def already_minted(self) -> bool:
        """Best-effort read of the contract; any failure means "not yet".

        A holding balance settles it, then any minted flag that reads true.
        A false or failing read falls through to the next view.
        """
        endpoint = self.pool.pick()
        for name in ("balanceOf",) + MINTED_VIEWS:
            if not endpoint.has_function(name):
                continue
            try:
                value = await endpoint.call(name, self.address)
            except SubmitError:
                continue
            if value is True or (not isinstance(value, bool) and int(value) > 0):
                return True
        return False

    # ======================== countdown priming ========================
    async def prime(self, base_quote: GasQuote, presign: bool = False) -> None:
        """Store a fresh base quote; in pre-sign mode also sign the first payload."""
        self.base_quote = base_quote
        self._set(gas_quote=self.pricer.premium(base_quote, self.tier))
        if not presign:
            return
        try:
            await self._sign(self.base_quote)
        except SubmitError as e:
            logger.warning(f"Pre-sign failed for {short_address(self.address)}: {e.message}")
            self.submission = None
            self._set(last_error=e.message)
            return
        # The payload carries this quote now; escalation must fetch a fresh one
        self.base_quote = None
        self._set(status="PRE-SIGNED READY")

    # ======================== main loop ========================
    async def run(self):
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error for {short_address(self.address)}")
            self._finish(Phase.FAILED, last_error=describe(e), status=f"Error: {describe(e)[:50]}")
        return self.board.get(self.address)

    async def _run(self) -> None:
        if self.board.get(self.address).terminal:
            return
        if self.window.is_over():
            self._finish(Phase.WINDOW_CLOSED)
            return
        if not await self.check_eligibility():
            self._finish(Phase.INELIGIBLE)
            return
        if await self.already_minted():
            self._succeed("Already minted")
            return

        phase = Phase.SUBMITTING if self.submission is not None else Phase.PRICING_GAS
        while phase not in TERMINAL_PHASES:
            if self.window.is_over():
                self._finish(Phase.WINDOW_CLOSED)
                return
            if phase is Phase.PRICING_GAS:
                phase = await self._price_and_sign()
            else:
                phase = await self._submit_once()

    async def _sign(self, base: GasQuote) -> SignedSubmission:
        quote = self.pricer.premium(base, self.tier)
        self._set(Phase.BUILDING, gas_quote=quote)
        proof = await self.cache.get_proof(self.address)
        nonce = await self.pool.pick().get_nonce(self.address)
        tx = self.builder.build(self.account, proof, quote, nonce, fee=self.fee)
        if self.policy.estimate_gas:
            tx["gas"] = await self._estimate_gas(tx)
        self._set(Phase.SIGNING)
        self.submission = self.builder.sign(self.account, tx)
        return self.submission

    async def _estimate_gas(self, tx: dict) -> int:
        call = {key: tx[key] for key in ("from", "to", "value", "data")}
        try:
            estimated = await self.pool.pick().estimate_gas(call)
        except SubmitError as e:
            # Only reverts that will never pass are worth acting on here
            if e.kind in (ErrorKind.ALREADY_MINTED, ErrorKind.SOLD_OUT, ErrorKind.INSUFFICIENT_FUNDS, ErrorKind.FEE_REJECTED):
                raise
            return tx["gas"]
        return max(int(estimated) * 110 // 100, 21000)

    async def _price_and_sign(self) -> Phase:
        self._set(Phase.PRICING_GAS)
        base = self.base_quote or await self.pricer.quote()
        self.base_quote = None
        try:
            await self._sign(base)
        except SubmitError as e:
            return await self._on_error(e)
        return Phase.SUBMITTING

    async def _submit_once(self) -> Phase:
        endpoint = self.pool.pick()
        attempts = self.board.get(self.address).attempts + 1
        self._set(Phase.SUBMITTING, attempts=attempts, last_error=None)
        try:
            tx_hash = await self.watcher.submit(endpoint, self.submission)
        except SubmitError as e:
            return await self._on_error(e, endpoint)

        self._set(Phase.AWAITING_CONFIRMATION, last_tx_hash=tx_hash)
        outcome = await self.watcher.await_confirmation(endpoint, tx_hash, self.policy.receipt_timeout)
        return await self._on_outcome(outcome)

    # ======================== transitions ========================
    async def _on_outcome(self, outcome: Outcome) -> Phase:
        if outcome is Outcome.SUCCESS:
            return self._succeed(STATUS_LABELS[Phase.SUCCESS])
        if outcome is Outcome.TIMED_OUT:
            # Same nonce, same fee: the network dedupes by hash
            self._set(status="Receipt timeout, resending...", last_error="Receipt timeout")
            return Phase.SUBMITTING

        self._set(status="Transaction failed", last_error="Transaction reverted")
        if await self.already_minted():
            return self._succeed("Already minted")
        self.submission = None
        await self._backoff()
        return Phase.PRICING_GAS

    async def _on_error(self, error: SubmitError, endpoint=None) -> Phase:
        kind = error.kind
        self._set(last_error=error.message)
        logger.debug(f"{short_address(self.address)} {kind.value}: {error.message}")

        if kind in (ErrorKind.ALREADY_KNOWN, ErrorKind.REPLACEMENT_UNDERPRICED):
            self._set(status="Tx in mempool, waiting...")
            if self.submission is None:
                await self._backoff()
                return Phase.PRICING_GAS
            outcome = await self.watcher.await_confirmation(
                endpoint or self.pool.pick(), self.submission.tx_hash, self.policy.transient_wait
            )
            if outcome is Outcome.TIMED_OUT:
                return Phase.SUBMITTING
            return await self._on_outcome(outcome)

        if kind is ErrorKind.NONCE_TOO_LOW:
            self._set(status="Nonce issue, re-signing...")
            if self.submission is not None and await self._landed(self.submission.tx_hash):
                return self._succeed(STATUS_LABELS[Phase.SUCCESS])
            if await self.already_minted():
                return self._succeed("Already minted")
            self.submission = None
            return Phase.PRICING_GAS

        if kind is ErrorKind.TIMEOUT:
            self._set(status="Timeout, retrying...")
            await self._pause(self.policy.transient_wait)
            return Phase.SUBMITTING if self.submission is not None else Phase.PRICING_GAS

        if kind is ErrorKind.PRICE_TOO_LOW:
            self.tier = PremiumTier.ESCALATED
            self.submission = None
            self._set(status="Underpriced, escalating gas...")
            return Phase.PRICING_GAS

        if kind is ErrorKind.FEE_REJECTED:
            self._set(status="Invalid fee, adjusting...")
            self.fee = await self._refresh_fee()
            self.submission = None
            return Phase.PRICING_GAS

        if kind is ErrorKind.INSUFFICIENT_FUNDS:
            return self._finish(Phase.FAILED, status="Insufficient funds")
        if kind is ErrorKind.ALREADY_MINTED:
            return self._succeed("Already minted")
        if kind is ErrorKind.SOLD_OUT:
            return self._finish(Phase.FAILED, status="Sold out")

        # RATE_LIMITED and UNKNOWN: keep the payload, the next pick may hit another node
        self._set(status=f"Error: {error.message[:50]}")
        await self._backoff()
        return Phase.SUBMITTING if self.submission is not None else Phase.PRICING_GAS

    async def _landed(self, tx_hash: str) -> bool:
        try:
            receipt = await self.pool.pick().get_receipt(tx_hash)
        except SubmitError:
            return False
        return receipt is not None and receipt["status"] == 1

    async def _refresh_fee(self) -> int:
        endpoint = self.pool.pick()
        if endpoint.has_function("launchpadFee"):
            try:
                fee = int(await endpoint.call("launchpadFee"))
            except SubmitError as e:
                logger.warning(f"launchpadFee() read failed: {e.message}")
            else:
                if fee > 0:
                    logger.info(f"Updated launchpad fee to: {fee} wei")
                    return fee
        adjusted = self.fee * self.policy.fee_bump_percent // 100
        logger.info(f"Adjusted launchpad fee to: {adjusted} wei")
        return adjusted
