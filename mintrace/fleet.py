"""Mint window and the fleet orchestrator that runs every account through it."""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, Sequence

from colorama import Fore

from .builder import TransactionBuilder
from .config import CONFIG, load_oracle
from .eligibility import EligibilityCache
from .endpoints import EndpointPool, worker_count
from .errors import describe
from .gas import GasPricer
from .logs import print_info, print_warning, short_address
from .machine import AccountRunner, RetryPolicy
from .models import Eligibility, FleetSummary, MintAccount
from .status import StatusBoard
from .watcher import SubmissionWatcher

logger = logging.getLogger("mintrace.fleet")

MODE_RETRY = "retry"
MODE_PRESIGN = "pre-sign"
MODES = (MODE_RETRY, MODE_PRESIGN)


class MintWindow:
    """Interval [open_at, close_at) in epoch seconds, plus an early-close switch.

    Countdowns are measured on the monotonic clock so wall-clock jumps do not
    shift the launch; ``clock`` only anchors them to the epoch timestamps.
    """

    def __init__(self, open_at: float, close_at: float, clock=time.time, monotonic=time.monotonic) -> None:
        if close_at <= open_at:
            raise ValueError("Mint window must close after it opens.")
        self.open_at = open_at
        self.close_at = close_at
        self._clock = clock
        self._monotonic = monotonic
        self._closed = asyncio.Event()

    def seconds_until_open(self) -> float:
        return self.open_at - self._clock()

    def seconds_until_close(self) -> float:
        return self.close_at - self._clock()

    def is_over(self) -> bool:
        return self._closed.is_set() or self._clock() >= self.close_at

    def is_open(self) -> bool:
        return not self.is_over() and self._clock() >= self.open_at

    def close(self) -> None:
        self._closed.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; wakes early on close. Returns ``is_over()``."""
        if self.is_over():
            return True
        timeout = min(seconds, self.seconds_until_close())
        if timeout > 0:
            try:
                await asyncio.wait_for(self._closed.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self.is_over()

    async def wait_until_open(
        self,
        lead: float = 0.0,
        on_tick: Optional[Callable[[float], Awaitable[None]]] = None,
        tick: float = 1.0,
    ) -> bool:
        """Count down to ``open_at - lead``. False if the window closed first."""
        target = self._monotonic() + self.seconds_until_open() - lead
        while True:
            remaining = target - self._monotonic()
            if remaining <= 0:
                return not self.is_over()
            if on_tick is not None:
                await on_tick(remaining)
            if await self.sleep(min(tick, remaining)):
                return False

    async def watch(self) -> None:
        while not self.is_over():
            await self.sleep(max(self.seconds_until_close(), 0.05))
        self.close()


class FleetOrchestrator:
    def __init__(
        self,
        runners: Sequence[AccountRunner],
        board: StatusBoard,
        pricer: GasPricer,
        window: MintWindow,
        mode: str = MODE_RETRY,
        refresh_interval: float = CONFIG["REFRESH_INTERVAL"],
        lead_seconds: float = CONFIG["LEAD_SECONDS"],
        stagger_jitter_ms: int = CONFIG["STAGGER"]["JITTER_MS"],
        stagger_step_ms: int = CONFIG["STAGGER"]["STEP_MS"],
        live: bool = False,
        rng: Optional[random.Random] = None,
        pool=None,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown mode {mode!r}, expected one of {', '.join(MODES)}")
        self.runners = list(runners)
        self.board = board
        self.pricer = pricer
        self.window = window
        self.mode = mode
        self.refresh_interval = refresh_interval
        self.lead_seconds = lead_seconds
        self.stagger_jitter_ms = stagger_jitter_ms
        self.stagger_step_ms = stagger_step_ms
        self.live = live
        self._rng = rng or random.Random()
        self.pool = pool
        self._system_line = "Initializing..."

    def stagger_delay(self, idx: int) -> float:
        delay_ms = self._rng.randint(0, self.stagger_jitter_ms) + (idx % 5) * self.stagger_step_ms
        return delay_ms / 1000

    def summary(self) -> FleetSummary:
        return self.board.summary()

    async def run(self) -> FleetSummary:
        if self.window.is_over():
            logger.info("Mint window already closed, nothing to do")
            for runner in self.runners:
                runner.mark_window_closed()
            return self.summary()

        display = asyncio.create_task(self._display()) if self.live else None
        closer = asyncio.create_task(self.window.watch())
        try:
            await self._check_eligibility()
            if not await self._countdown():
                for runner in self.runners:
                    runner.mark_window_closed()
                return self.summary()
            self._system_line = "Minting started!"
            await self._launch_all()
        finally:
            closer.cancel()
            if display is not None:
                display.cancel()
            await asyncio.gather(closer, *([display] if display else []), return_exceptions=True)
        return self.summary()

    # ======================== stages ========================
    async def _check_eligibility(self) -> None:
        self._system_line = "Checking eligibility..."
        results = await asyncio.gather(*(r.check_eligibility() for r in self.runners), return_exceptions=True)
        for runner, result in zip(self.runners, results):
            if isinstance(result, Exception):
                logger.error(f"Eligibility check crashed for {short_address(runner.address)}: {describe(result)}")
        summary = self.summary()
        print_info(f"Eligible wallets: {summary.eligible_count}/{summary.total_count}")

    def _eligible_runners(self):
        return [r for r in self.runners if self.board.get(r.address).eligible is Eligibility.ELIGIBLE]

    async def _countdown(self) -> bool:
        eligible = self._eligible_runners()
        last_refresh = None

        async def on_tick(remaining: float) -> None:
            nonlocal last_refresh
            self._system_line = f"Starting in {remaining:.0f}s"
            now = time.monotonic()
            if eligible and (last_refresh is None or now - last_refresh >= self.refresh_interval):
                last_refresh = now
                await self._prime(eligible)

        if self.window.seconds_until_open() - self.lead_seconds > 0:
            print_info(f"Waiting {self.window.seconds_until_open():.0f}s for the mint window to open...")
        opened = await self.window.wait_until_open(
            self.lead_seconds, on_tick, tick=min(1.0, self.refresh_interval)
        )
        if not opened:
            print_warning("Mint window closed before it opened")
        return opened

    async def _prime(self, runners) -> None:
        base = await self.pricer.quote()
        presign = self.mode == MODE_PRESIGN
        results = await asyncio.gather(*(r.prime(base, presign=presign) for r in runners), return_exceptions=True)
        for runner, result in zip(runners, results):
            if isinstance(result, Exception):
                logger.warning(f"Priming failed for {short_address(runner.address)}: {describe(result)}")

    async def _launch(self, runner: AccountRunner, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        return await runner.run()

    async def _launch_all(self) -> None:
        tasks = [
            asyncio.create_task(self._launch(runner, self.stagger_delay(idx)))
            for idx, runner in enumerate(self.runners)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for runner, result in zip(self.runners, results):
            if isinstance(result, BaseException):
                logger.error(f"Task for {short_address(runner.address)} ended with: {describe(result)}")
                self.board.update(runner.address, last_error=describe(result), terminal=True)

    async def _display(self) -> None:
        while True:
            print("\033[2J\033[H", end="")
            print(self.board.render(self._system_line))
            await asyncio.sleep(1)


async def build_fleet(settings, mode: str = MODE_RETRY, live: bool = False, rng: Optional[random.Random] = None):
    """Wire every component from a loaded ``Settings``."""
    oracle = load_oracle(settings)
    pool = EndpointPool.from_urls(
        settings.rpc_urls,
        settings.contract_address,
        settings.abi,
        settings.rpc_timeout,
        workers=worker_count(len(settings.private_keys), len(settings.rpc_urls)),
    )
    try:
        chain_id = settings.chain_id or await pool.pick().chain_id()
    except Exception:
        pool.close()
        raise
    print_info(f"Connected to chain {Fore.CYAN}{chain_id}{Fore.RESET} via {len(pool)} RPC endpoint(s)")

    board = StatusBoard()
    window = MintWindow(settings.start_time, settings.end_time)
    cache = EligibilityCache(oracle, pool)
    pricer = GasPricer(
        pool,
        settings.max_fee_per_gas,
        settings.max_priority_fee_per_gas,
        settings.default_quote,
        initial_band=settings.initial_band,
        escalated_band=settings.escalated_band,
        rng=rng,
    )
    builder = TransactionBuilder(
        settings.contract_address,
        settings.abi,
        chain_id,
        settings.launchpad_fee,
        settings.gas_limit,
        mint_function=settings.mint_function,
        quantity=settings.quantity,
    )
    watcher = SubmissionWatcher(settings.receipt_timeout, settings.poll_interval)
    backoff = CONFIG["BACKOFF"]
    policy = RetryPolicy(
        receipt_timeout=settings.receipt_timeout,
        transient_wait=CONFIG["TRANSIENT_WAIT"],
        backoff_base=backoff["BASE"],
        backoff_factor=backoff["FACTOR"],
        backoff_cap=backoff["CAP"],
        backoff_jitter=backoff["JITTER"],
    )
    runners = [
        AccountRunner(MintAccount.from_key(key), board, cache, pricer, builder, watcher, pool, window, policy, rng)
        for key in settings.private_keys
    ]
    return FleetOrchestrator(
        runners,
        board,
        pricer,
        window,
        mode=mode,
        refresh_interval=settings.refresh_interval,
        lead_seconds=settings.lead_seconds,
        live=live,
        rng=rng,
        pool=pool,
    )
