"""Run-scoped eligibility and proof memoization.

Both caches are write-once per address, negative results included: an oracle
outage at check time reads as "not eligible" for the rest of the run.
"""

import asyncio
import logging
from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence

from hexbytes import HexBytes

from .errors import SubmitError
from .logs import short_address
from .models import ProofNodes

logger = logging.getLogger("mintrace.eligibility")

SOURCE_CONTRACT = "contract"
SOURCE_PROOF = "proof"


class ProofOracle(Protocol):
    async def get_proof(self, address: str) -> Sequence[bytes]:
        ...


def _to_nodes(values: Iterable) -> ProofNodes:
    nodes = tuple(bytes(HexBytes(value)) for value in values)
    for node in nodes:
        if len(node) != 32:
            raise ValueError(f"Proof node must be 32 bytes, got {len(node)}")
    return nodes


class StaticProofOracle:
    """Proofs precomputed off-line, keyed by address."""

    def __init__(self, proofs: Mapping[str, Sequence]) -> None:
        self._proofs = {address.lower(): _to_nodes(nodes) for address, nodes in proofs.items()}

    async def get_proof(self, address: str) -> ProofNodes:
        return self._proofs.get(address.lower(), ())


class OpenProofOracle:
    """Same proof for every address (public phases that still take a proof argument)."""

    admits_all = True

    def __init__(self, nodes: Sequence = ()) -> None:
        self._nodes = _to_nodes(nodes)

    async def get_proof(self, address: str) -> ProofNodes:
        return self._nodes


class EligibilityCache:
    def __init__(self, oracle: ProofOracle, pool, eligibility_function: str = "isEligible") -> None:
        self.oracle = oracle
        self.pool = pool
        self.eligibility_function = eligibility_function
        self._proofs: Dict[str, ProofNodes] = {}
        self._eligible: Dict[str, bool] = {}
        self._sources: Dict[str, Optional[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def get_proof(self, address: str) -> ProofNodes:
        key = address.lower()
        if key in self._proofs:
            return self._proofs[key]
        async with self._lock_for("proof:" + key):
            if key not in self._proofs:
                try:
                    proof = tuple(await self.oracle.get_proof(address))
                except Exception as e:
                    logger.warning(f"Proof lookup failed for {short_address(address)}: {e}")
                    proof = ()
                self._proofs[key] = proof
        return self._proofs[key]

    async def is_eligible(self, address: str) -> bool:
        key = address.lower()
        if key in self._eligible:
            return self._eligible[key]
        async with self._lock_for("eligible:" + key):
            if key not in self._eligible:
                eligible, source = await self._check(address)
                self._sources[key] = source
                self._eligible[key] = eligible
        return self._eligible[key]

    async def _check(self, address: str):
        proof = await self.get_proof(address)
        endpoint = self.pool.pick()
        if endpoint.has_function(self.eligibility_function):
            try:
                eligible = bool(await endpoint.call(self.eligibility_function, address, list(proof)))
            except SubmitError as e:
                logger.warning(f"Eligibility check failed for {short_address(address)}: {e.message}")
                return False, SOURCE_CONTRACT
            return eligible, SOURCE_CONTRACT
        # No on-chain query: proof presence is only a best-effort signal
        return len(proof) > 0 or getattr(self.oracle, "admits_all", False), SOURCE_PROOF

    def source(self, address: str) -> Optional[str]:
        return self._sources.get(address.lower())

    def cached(self, address: str) -> Optional[bool]:
        return self._eligible.get(address.lower())
