"""
Vesting schedule records and the store that holds them.

One record per beneficiary. Records are created once and never deleted;
releases only grow ``released_amount`` and revocation only toggles
``revoked``.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List

from .categories import CategoryLedger, VestingCategory
from .structured_logger import truncate_address
from .token_ledger import ZERO_ADDRESS
from .vesting_exceptions import (
    DuplicateBeneficiaryError,
    ScheduleNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# start == UNSET_START means "follow the global vesting start"
UNSET_START = 0


@dataclass
class VestingSchedule:
    beneficiary: str
    total_amount: int
    start: int
    cliff_duration: int
    total_duration: int
    category: VestingCategory
    released_amount: int = 0
    revoked: bool = False
    initialized: bool = True

    @property
    def uses_global_start(self) -> bool:
        return self.start == UNSET_START

    @property
    def unreleased_amount(self) -> int:
        return self.total_amount - self.released_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beneficiary": self.beneficiary,
            "total_amount": self.total_amount,
            "start": self.start,
            "cliff_duration": self.cliff_duration,
            "total_duration": self.total_duration,
            "category": self.category.value,
            "released_amount": self.released_amount,
            "revoked": self.revoked,
            "initialized": self.initialized,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VestingSchedule":
        return cls(
            beneficiary=data["beneficiary"],
            total_amount=int(data["total_amount"]),
            start=int(data.get("start", UNSET_START)),
            cliff_duration=int(data["cliff_duration"]),
            total_duration=int(data["total_duration"]),
            category=VestingCategory.parse(data["category"]),
            released_amount=int(data.get("released_amount", 0)),
            revoked=bool(data.get("revoked", False)),
            initialized=bool(data.get("initialized", True)),
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_beneficiary(beneficiary: str) -> str:
    """
    Normalize a beneficiary identity.

    Raises:
        ValidationError: If the identity is empty, not a string, or the zero address
    """
    if not isinstance(beneficiary, str) or not beneficiary.strip():
        raise ValidationError("Invalid beneficiary address")
    normalized = beneficiary.strip().lower()
    if normalized == ZERO_ADDRESS:
        raise ValidationError("Invalid beneficiary address")
    return normalized


def validate_schedule_params(
    amount: int,
    start: int | None,
    cliff: int,
    duration: int,
) -> int:
    """
    Validate schedule parameters.

    Returns:
        The start value to store (``UNSET_START`` when none was given)

    Raises:
        ValidationError: On zero/negative amount or duration, negative cliff
            or start, or a cliff exceeding the duration
    """
    if not _is_int(amount) or amount <= 0:
        raise ValidationError("Amount must be greater than zero", details={"amount": amount})
    if not _is_int(duration) or duration <= 0:
        raise ValidationError("Duration must be greater than zero", details={"duration": duration})
    if not _is_int(cliff) or cliff < 0:
        raise ValidationError("Cliff must be a non-negative integer", details={"cliff": cliff})
    if cliff > duration:
        raise ValidationError(
            "Cliff cannot exceed duration", details={"cliff": cliff, "duration": duration}
        )
    if start is None:
        return UNSET_START
    if not _is_int(start) or start < 0:
        raise ValidationError("Start must be a non-negative integer", details={"start": start})
    return start


class ScheduleStore:
    """
    Holds one vesting record per beneficiary.

    Schedule creation commits the category allocation in the same step, so a
    schedule never exists without its allocation and vice versa. Not
    thread-safe on its own; the engine serializes access.
    """

    def __init__(self, category_ledger: CategoryLedger):
        self.category_ledger = category_ledger
        self._schedules: Dict[str, VestingSchedule] = {}

    def __contains__(self, beneficiary: str) -> bool:
        return self._key(beneficiary) in self._schedules

    def __len__(self) -> int:
        return len(self._schedules)

    def __iter__(self) -> Iterator[VestingSchedule]:
        return iter(list(self._schedules.values()))

    def add_schedule(
        self,
        beneficiary: str,
        amount: int,
        start: int | None,
        cliff: int,
        duration: int,
        category: VestingCategory | str | int,
    ) -> VestingSchedule:
        """
        Validate and store a new schedule, recording its category allocation.

        Either both the allocation and the schedule are stored or neither is.

        Raises:
            ValidationError: On invalid parameters
            DuplicateBeneficiaryError: If the beneficiary already has a schedule
            AllocationExceededError: If the category cap would be exceeded
        """
        schedule = self.prepare_schedule(beneficiary, amount, start, cliff, duration, category)
        self.category_ledger.record_allocation(schedule.category, schedule.total_amount)
        self._schedules[schedule.beneficiary] = schedule
        return dataclasses.replace(schedule)

    def prepare_schedule(
        self,
        beneficiary: str,
        amount: int,
        start: int | None,
        cliff: int,
        duration: int,
        category: VestingCategory | str | int,
    ) -> VestingSchedule:
        """Run every creation check except the cap and build the record, storing nothing."""
        key = normalize_beneficiary(beneficiary)
        stored_start = validate_schedule_params(amount, start, cliff, duration)
        category = VestingCategory.parse(category)
        existing = self._schedules.get(key)
        if existing is not None and existing.initialized:
            raise DuplicateBeneficiaryError(
                "Vesting already exists", details={"beneficiary": key}
            )
        return VestingSchedule(
            beneficiary=key,
            total_amount=amount,
            start=stored_start,
            cliff_duration=cliff,
            total_duration=duration,
            category=category,
        )

    def get(self, beneficiary: str) -> VestingSchedule:
        """Return a copy of the beneficiary's schedule."""
        return dataclasses.replace(self._lookup(beneficiary))

    def get_many(self, beneficiaries: List[str]) -> List[VestingSchedule]:
        return [self.get(beneficiary) for beneficiary in beneficiaries]

    def revoke(self, beneficiary: str) -> VestingSchedule:
        schedule = self._lookup(beneficiary)
        if schedule.revoked:
            raise ValidationError("Vesting already revoked", details={"beneficiary": schedule.beneficiary})
        schedule.revoked = True
        return dataclasses.replace(schedule)

    def restore(self, beneficiary: str) -> VestingSchedule:
        schedule = self._lookup(beneficiary)
        if not schedule.revoked:
            raise ValidationError("Vesting is not revoked", details={"beneficiary": schedule.beneficiary})
        schedule.revoked = False
        return dataclasses.replace(schedule)

    def record_release(self, beneficiary: str, amount: int) -> VestingSchedule:
        schedule = self._lookup(beneficiary)
        if amount < 0 or schedule.released_amount + amount > schedule.total_amount:
            raise ValidationError(
                "Release would exceed total amount",
                details={
                    "released": schedule.released_amount,
                    "amount": amount,
                    "total": schedule.total_amount,
                },
            )
        schedule.released_amount += amount
        return dataclasses.replace(schedule)

    def _lookup(self, beneficiary: str) -> VestingSchedule:
        schedule = self._schedules.get(self._key(beneficiary))
        if schedule is None:
            raise ScheduleNotFoundError(
                "No vesting schedule for beneficiary",
                details={"beneficiary": truncate_address(str(beneficiary))},
            )
        return schedule

    @staticmethod
    def _key(beneficiary: str) -> str:
        if not isinstance(beneficiary, str):
            return ""
        return beneficiary.strip().lower()

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        return {key: schedule.to_dict() for key, schedule in self._schedules.items()}

    def load(self, data: Dict[str, Any]) -> None:
        """Replace the stored records with a serialized snapshot (allocations untouched)."""
        self._schedules = {
            key: VestingSchedule.from_dict(value) for key, value in data.items()
        }
