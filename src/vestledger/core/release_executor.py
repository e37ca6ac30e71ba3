"""
Release executor.

Moves releasable tokens from engine custody to a beneficiary. The ledger
transfer happens first; ``released_amount`` is only bumped once the ledger
reports success, so a failed transfer leaves bookkeeping exactly as it was.
The executor never retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from . import vesting_metrics
from .schedules import ScheduleStore
from .structured_logger import truncate_address
from .token_ledger import TokenLedger
from .vesting_calculator import releasable_amount
from .vesting_exceptions import TransferFailedError

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    beneficiary: str
    amount: int
    released_total: int
    timestamp: int


class ReleaseExecutor:
    """Computes and executes releases against the token ledger."""

    def __init__(self, store: ScheduleStore, ledger: TokenLedger, custody_address: str):
        self.store = store
        self.ledger = ledger
        self.custody_address = custody_address

    def execute(self, beneficiary: str, global_start: int, now: int) -> ReleaseResult:
        """
        Release whatever is releasable for ``beneficiary`` at ``now``.

        A releasable amount of zero succeeds without touching the ledger.

        Raises:
            ScheduleNotFoundError: If the beneficiary has no schedule
            TransferFailedError: If the ledger rejects or fails the transfer
        """
        schedule = self.store.get(beneficiary)
        amount = releasable_amount(schedule, global_start, now)

        if amount == 0:
            logger.debug(
                "Nothing releasable",
                extra={
                    "event": "vesting.release_noop",
                    "beneficiary": truncate_address(schedule.beneficiary),
                },
            )
            vesting_metrics.record_release(schedule.category.value, 0)
            return ReleaseResult(schedule.beneficiary, 0, schedule.released_amount, now)

        try:
            ok = self.ledger.transfer(self.custody_address, schedule.beneficiary, amount)
        except Exception as exc:
            vesting_metrics.record_release_failure()
            logger.error(
                "Release transfer failed: %s",
                exc,
                extra={
                    "event": "vesting.release_failed",
                    "beneficiary": truncate_address(schedule.beneficiary),
                    "amount": amount,
                },
            )
            raise TransferFailedError(
                f"Token transfer failed: {exc}",
                details={"beneficiary": schedule.beneficiary, "amount": amount},
            ) from exc

        if not ok:
            vesting_metrics.record_release_failure()
            logger.error(
                "Release transfer rejected by ledger",
                extra={
                    "event": "vesting.release_failed",
                    "beneficiary": truncate_address(schedule.beneficiary),
                    "amount": amount,
                },
            )
            raise TransferFailedError(
                "Token transfer rejected by ledger",
                details={"beneficiary": schedule.beneficiary, "amount": amount},
            )

        updated = self.store.record_release(schedule.beneficiary, amount)
        vesting_metrics.record_release(schedule.category.value, amount)
        logger.info(
            "Tokens released",
            extra={
                "event": "vesting.tokens_released",
                "beneficiary": truncate_address(schedule.beneficiary),
                "amount": amount,
                "released_total": updated.released_amount,
            },
        )
        return ReleaseResult(schedule.beneficiary, amount, updated.released_amount, now)
