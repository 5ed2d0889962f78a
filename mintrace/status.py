"""Live per-account status table.

Each account's state machine is the only writer of its row; the display loop
and the final report read copies. One coarse lock is enough at this write
rate.
"""

import threading
from datetime import datetime
from typing import Dict, Optional

from colorama import Fore, Style
from web3 import Web3

from .logs import short_address, short_hash
from .models import AccountResult, Eligibility, FleetSummary

COLUMNS = (("Wallet", 15), ("Status", 34), ("Tx Hash", 15), ("Attempts", 8), ("Max Fee", 14), ("Time", 10))


class StatusBoard:
    def __init__(self, addresses=()) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, AccountResult] = {}
        for address in addresses:
            self.register(address)

    def register(self, address: str) -> None:
        with self._lock:
            self._rows.setdefault(address, AccountResult())

    def update(self, address: str, **fields) -> AccountResult:
        with self._lock:
            row = self._rows[address]
            if row.success and fields.get("success") is False:
                raise ValueError(f"{address} already succeeded; success cannot be cleared.")
            if "attempts" in fields and fields["attempts"] < row.attempts:
                raise ValueError("attempts never decrease")
            for name, value in fields.items():
                if not hasattr(row, name):
                    raise AttributeError(f"AccountResult has no field {name!r}")
                setattr(row, name, value)
            return row.copy()

    def get(self, address: str) -> AccountResult:
        with self._lock:
            return self._rows[address].copy()

    def snapshot(self) -> Dict[str, AccountResult]:
        with self._lock:
            return {address: row.copy() for address, row in self._rows.items()}

    def summary(self) -> FleetSummary:
        rows = self.snapshot().values()
        return FleetSummary(
            eligible_count=sum(1 for r in rows if r.eligible is Eligibility.ELIGIBLE),
            success_count=sum(1 for r in rows if r.success),
            total_count=len(rows),
        )

    def render(self, system_line: Optional[str] = None) -> str:
        now = datetime.now().strftime("%H:%M:%S")
        lines = [_row([name for name, _ in COLUMNS], color=Fore.CYAN + Style.BRIGHT), _separator()]
        if system_line:
            lines.append(_row(["SYSTEM", system_line, "-", "-", "-", now]))
            lines.append(_separator())
        for address, result in self.snapshot().items():
            fee = "-"
            if result.gas_quote is not None:
                fee = f"{Web3.from_wei(result.gas_quote.max_fee_per_gas, 'gwei'):.4f} Gwei"
            lines.append(
                _row(
                    [short_address(address), _status_text(result), short_hash(result.last_tx_hash),
                     str(result.attempts), fee, now],
                    color=_status_color(result),
                )
            )
        summary = self.summary()
        lines.append(_separator())
        lines.append(
            f"Total Wallets: {summary.total_count} | Eligible: {summary.eligible_count} | "
            f"Successful: {summary.success_count}"
        )
        return "\n".join(lines)


def _status_text(result: AccountResult) -> str:
    mark = {Eligibility.ELIGIBLE: "✅", Eligibility.INELIGIBLE: "❌"}.get(result.eligible, "")
    if result.eligible is Eligibility.ELIGIBLE and result.eligibility_source == "proof":
        mark += "?"
    return f"{result.status} {mark}".strip()


def _status_color(result: AccountResult):
    if result.success:
        return Fore.GREEN
    if result.terminal:
        return Fore.RED
    return None


def _row(cells, color=None) -> str:
    text = " | ".join(str(cell)[:width].ljust(width) for cell, (_, width) in zip(cells, COLUMNS))
    return f"{color}{text}{Style.RESET_ALL}" if color else text


def _separator() -> str:
    return "-" * (sum(width for _, width in COLUMNS) + 3 * (len(COLUMNS) - 1))
