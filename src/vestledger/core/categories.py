"""
Allocation categories and their caps.

Every vesting schedule is tagged with one category. A category's
``allocated`` total only grows, and a new schedule is rejected if it would
push ``allocated`` past ``max_allocation``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping

from .vesting_exceptions import AllocationExceededError, ValidationError

logger = logging.getLogger(__name__)


class VestingCategory(Enum):
    CORE_TEAM = "core_team"
    ECOSYSTEM_FUND = "ecosystem_fund"
    COMMUNITY_AIRDROP = "community_airdrop"
    STRATEGIC_PARTNERS = "strategic_partners"
    PUBLIC_SALE = "public_sale"
    TREASURY_RESERVE = "treasury_reserve"

    @classmethod
    def parse(cls, value: "VestingCategory | str | int") -> "VestingCategory":
        """Accept a member, its value, its name, or its position."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            raise ValidationError(f"Unknown category index: {value}")
        if isinstance(value, str):
            key = value.strip()
            for member in cls:
                if key.lower() == member.value or key.upper() == member.name:
                    return member
        raise ValidationError(f"Unknown category: {value!r}")


# Launch allocation in whole tokens (1,000,000 total supply)
DEFAULT_CATEGORY_CAPS_TOKENS: Dict[VestingCategory, int] = {
    VestingCategory.CORE_TEAM: 200_000,
    VestingCategory.ECOSYSTEM_FUND: 250_000,
    VestingCategory.COMMUNITY_AIRDROP: 150_000,
    VestingCategory.STRATEGIC_PARTNERS: 100_000,
    VestingCategory.PUBLIC_SALE: 200_000,
    VestingCategory.TREASURY_RESERVE: 100_000,
}


def default_category_caps(decimals: int = 18) -> Dict[VestingCategory, int]:
    """Default caps scaled to base units."""
    scale = 10 ** decimals
    return {category: tokens * scale for category, tokens in DEFAULT_CATEGORY_CAPS_TOKENS.items()}


@dataclass
class CategoryAllocation:
    category: VestingCategory
    max_allocation: int
    allocated: int = 0

    @property
    def remaining(self) -> int:
        return self.max_allocation - self.allocated

    def stats(self) -> Dict[str, int]:
        return {
            "allocated": self.allocated,
            "max_allocation": self.max_allocation,
            "remaining": self.remaining,
        }


class CategoryLedger:
    """
    Tracks per-category committed amounts against their caps.

    Not thread-safe on its own; the engine serializes access.
    """

    def __init__(self, caps: Mapping[VestingCategory, int] | None = None):
        caps = dict(caps) if caps is not None else default_category_caps()
        self._categories: Dict[VestingCategory, CategoryAllocation] = {}
        for category in VestingCategory:
            cap = caps.get(category, 0)
            self._validate_cap(cap)
            self._categories[category] = CategoryAllocation(category, cap)

    def check_allocation(self, category: VestingCategory, amount: int) -> None:
        """
        Verify ``amount`` fits in the category without recording it.

        Raises:
            AllocationExceededError: If the cap would be exceeded
        """
        entry = self._categories[VestingCategory.parse(category)]
        if entry.allocated + amount > entry.max_allocation:
            raise AllocationExceededError(
                "Exceeds category allocation limit",
                category=entry.category.name,
                details={
                    "requested": amount,
                    "allocated": entry.allocated,
                    "max_allocation": entry.max_allocation,
                },
            )

    def record_allocation(self, category: VestingCategory, amount: int) -> None:
        """
        Commit ``amount`` to a category.

        Raises:
            AllocationExceededError: If ``allocated + amount > max_allocation``
        """
        category = VestingCategory.parse(category)
        self.check_allocation(category, amount)
        self._categories[category].allocated += amount

    def update_cap(self, category: VestingCategory, new_max: int) -> int:
        """
        Set a new cap for a category.

        A cap below the amount already allocated is rejected so that
        ``allocated <= max_allocation`` keeps holding.

        Returns:
            The previous cap

        Raises:
            ValidationError: If the cap is negative or below ``allocated``
        """
        entry = self._categories[VestingCategory.parse(category)]
        self._validate_cap(new_max)
        if new_max < entry.allocated:
            raise ValidationError(
                "New cap is below the amount already allocated",
                details={"allocated": entry.allocated, "requested_max": new_max},
            )
        previous = entry.max_allocation
        entry.max_allocation = new_max
        return previous

    def stats(self, category: VestingCategory) -> Dict[str, int]:
        return self._categories[VestingCategory.parse(category)].stats()

    def all_stats(self) -> Dict[str, Dict[str, int]]:
        return {category.name: entry.stats() for category, entry in self._categories.items()}

    @property
    def total_allocated(self) -> int:
        return sum(entry.allocated for entry in self._categories.values())

    def _validate_cap(self, cap: int) -> None:
        if not isinstance(cap, int) or isinstance(cap, bool) or cap < 0:
            raise ValidationError(f"Category cap must be a non-negative integer, got {cap!r}")

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        return {
            category.value: {"max_allocation": entry.max_allocation, "allocated": entry.allocated}
            for category, entry in self._categories.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryLedger":
        caps = {VestingCategory.parse(key): int(value["max_allocation"]) for key, value in data.items()}
        ledger = cls(caps)
        for key, value in data.items():
            ledger._categories[VestingCategory.parse(key)].allocated = int(value.get("allocated", 0))
        return ledger
