from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from dulu.config import Settings
from dulu.errors import PaymentError
from dulu.services.pawapay import DepositStatus

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Payment completed successfully"
REJECTED_MESSAGE = "Payment rejected by your operator. Check your balance and try again."
FAILED_MESSAGE = "Payment failed. Check your connection and try again."
TIMEOUT_MESSAGE = (
    "Timed out waiting for confirmation. Check your transaction manually or try again."
)
CANCELLED_MESSAGE = "Status polling cancelled"

StatusCheck = Callable[[str], Awaitable[DepositStatus]]


@dataclass(frozen=True)
class PollOutcome:
    state: str
    attempts: int
    message: str
    deposit: DepositStatus | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == "completed"


def outcome_for(deposit: DepositStatus, attempts: int) -> PollOutcome | None:
    """Return the final outcome for a terminal status, ``None`` to keep going."""
    status = deposit.status.upper()
    if status == "COMPLETED":
        return PollOutcome("completed", attempts, COMPLETED_MESSAGE, deposit)
    if status == "REJECTED":
        reason = deposit.rejection_message
        message = f"Payment rejected: {reason}" if reason else REJECTED_MESSAGE
        return PollOutcome("rejected", attempts, message, deposit)
    if status == "FAILED":
        return PollOutcome("failed", attempts, deposit.reason or FAILED_MESSAGE, deposit)
    return None


class PaymentStatusPoller:
    """Poll a deposit at a fixed cadence for a bounded number of attempts.

    ``cancel()`` wakes a pending wait immediately, so a dismissed view or a
    stopped script leaves no sleeping timer behind.
    """

    def __init__(
        self,
        check: StatusCheck,
        *,
        interval: float = 5.0,
        max_attempts: int = 60,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self._check = check
        self.interval = interval
        self.max_attempts = max_attempts
        self._cancelled = asyncio.Event()

    @classmethod
    def from_settings(cls, check: StatusCheck, cfg: Settings) -> "PaymentStatusPoller":
        return cls(check, interval=cfg.poll_interval_s, max_attempts=cfg.poll_max_attempts)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def _sleep(self) -> bool:
        if self._cancelled.is_set():
            return True
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, deposit_id: str) -> PollOutcome:
        last: DepositStatus | None = None
        for attempt in range(1, self.max_attempts + 1):
            if await self._sleep():
                logger.info("polling cancelled for deposit %s", deposit_id)
                return PollOutcome("cancelled", attempt - 1, CANCELLED_MESSAGE, last)
            try:
                deposit = await self._check(deposit_id)
            except PaymentError as exc:
                logger.warning(
                    "Status polling error %s/%s for %s: %s",
                    attempt,
                    self.max_attempts,
                    deposit_id,
                    exc,
                )
                continue
            last = deposit
            outcome = outcome_for(deposit, attempt)
            if outcome is not None:
                return outcome
            logger.debug(
                "deposit %s still %s after attempt %s", deposit_id, deposit.status, attempt
            )

        logger.warning("Max polling attempts reached for deposit %s", deposit_id)
        return PollOutcome("timeout", self.max_attempts, TIMEOUT_MESSAGE, last)
