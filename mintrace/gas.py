"""Gas pricing with hard ceilings and randomized premium tiers."""

import logging
import random
from enum import Enum
from typing import Optional, Tuple

from web3 import Web3

from .errors import SubmitError
from .models import GasQuote

logger = logging.getLogger("mintrace.gas")


class PremiumTier(Enum):
    INITIAL = "initial"
    ESCALATED = "escalated"


class GasPricer:
    """Derives bounded EIP-1559 quotes from the network base fee.

    Each account draws its own multiplier from the tier band so the fleet
    never submits identical bids. All scaling is integer arithmetic.
    """

    def __init__(
        self,
        pool,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
        default_quote: GasQuote,
        initial_band: Tuple[int, int] = (130, 160),
        escalated_band: Tuple[int, int] = (220, 300),
        rng: Optional[random.Random] = None,
    ) -> None:
        self.pool = pool
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee_per_gas = max_priority_fee_per_gas
        self.default_quote = self.clamp(default_quote)
        self.bands = {PremiumTier.INITIAL: initial_band, PremiumTier.ESCALATED: escalated_band}
        self._rng = rng or random.Random()

    def clamp(self, quote: GasQuote) -> GasQuote:
        max_fee = min(quote.max_fee_per_gas, self.max_fee_per_gas)
        priority = min(quote.max_priority_fee_per_gas, self.max_priority_fee_per_gas, max_fee)
        return GasQuote(max_fee, priority)

    async def quote(self, multiplier_percent: Optional[int] = None, base: Optional[GasQuote] = None) -> GasQuote:
        """Fetch a ceiling-clamped quote, or scale ``base`` when a multiplier is given."""
        if multiplier_percent is None:
            return await self._fetch()
        if base is None:
            base = await self._fetch()
        return self.scale(base, multiplier_percent)

    async def _fetch(self) -> GasQuote:
        endpoint = self.pool.pick()
        try:
            quote = await endpoint.fee_data()
        except SubmitError as e:
            logger.warning(f"Error getting gas data from {getattr(endpoint, 'url', endpoint)}, using safe defaults: {e.message}")
            return self.default_quote
        clamped = self.clamp(quote)
        if clamped != quote:
            logger.debug(f"Gas quote capped to {_gwei(clamped.max_fee_per_gas)} / {_gwei(clamped.max_priority_fee_per_gas)} Gwei")
        return clamped

    def scale(self, base: GasQuote, multiplier_percent: int) -> GasQuote:
        if multiplier_percent < 0:
            raise ValueError("Multiplier percent must be non-negative.")
        return self.clamp(
            GasQuote(
                base.max_fee_per_gas * multiplier_percent // 100,
                base.max_priority_fee_per_gas * multiplier_percent // 100,
            )
        )

    def draw_multiplier(self, tier: PremiumTier) -> int:
        low, high = self.bands[tier]
        return self._rng.randint(low, high)

    def premium(self, base: GasQuote, tier: PremiumTier = PremiumTier.INITIAL) -> GasQuote:
        return self.scale(base, self.draw_multiplier(tier))


def _gwei(wei: int) -> str:
    return f"{Web3.from_wei(wei, 'gwei'):.4f}"
