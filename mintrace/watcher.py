import asyncio
import logging
import time

from .errors import ErrorKind, SubmitError
from .models import Outcome, SignedSubmission

logger = logging.getLogger("mintrace.watcher")


def receipt_outcome(receipt) -> Outcome:
    if receipt is None:
        return Outcome.TIMED_OUT
    return Outcome.SUCCESS if receipt["status"] == 1 else Outcome.REVERTED


class SubmissionWatcher:
    """Sends signed payloads and waits, bounded, for their receipts.

    The endpoint's own blocking wait is tried first. Endpoints that lack it,
    or fail on it, are polled every ``poll_interval`` seconds until the
    deadline.
    """

    def __init__(self, receipt_timeout: float = 60, poll_interval: float = 1.0, clock=time.monotonic) -> None:
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._clock = clock

    async def submit(self, endpoint, submission: SignedSubmission) -> str:
        tx_hash = await endpoint.send_raw_transaction(submission.signed_payload)
        if tx_hash and tx_hash.lower() != submission.tx_hash.lower():
            logger.debug(f"Endpoint returned hash {tx_hash}, expected {submission.tx_hash}")
        return tx_hash or submission.tx_hash

    async def await_confirmation(self, endpoint, tx_hash: str, timeout: float = None) -> Outcome:
        timeout = self.receipt_timeout if timeout is None else timeout
        deadline = self._clock() + timeout

        if getattr(endpoint, "supports_push_wait", False):
            try:
                receipt = await endpoint.wait_for_receipt(tx_hash, timeout, self.poll_interval)
            except SubmitError as e:
                if e.kind is ErrorKind.TIMEOUT:
                    return Outcome.TIMED_OUT
                logger.debug(f"Push wait unavailable ({e.message}), polling for {tx_hash}")
            else:
                return receipt_outcome(receipt)

        while True:
            try:
                receipt = await endpoint.get_receipt(tx_hash)
            except SubmitError as e:
                # Transient lookup failures just cost one poll
                logger.debug(f"Receipt lookup failed for {tx_hash}: {e.message}")
                receipt = None
            if receipt is not None:
                return receipt_outcome(receipt)
            remaining = deadline - self._clock()
            if remaining <= 0:
                return Outcome.TIMED_OUT
            await asyncio.sleep(min(self.poll_interval, remaining))
