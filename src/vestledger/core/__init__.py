"""
vestledger core.

This package provides the vesting engine and its parts:
- Categories: capped allocation buckets
- Schedules: one vesting record per beneficiary
- Calculator: pure vested/releasable math
- Release executor: ledger transfer plus bookkeeping
- Engine: authorization, pause gate, admin controls, emergency withdrawal
- Access control, token ledger protocol, exceptions, logging, metrics
"""

from .access_control import Capability, CapabilityChecker, RoleBasedCapabilityChecker
from .categories import (
    DEFAULT_CATEGORY_CAPS_TOKENS,
    CategoryLedger,
    VestingCategory,
    default_category_caps,
)
from .release_executor import ReleaseExecutor, ReleaseResult
from .schedules import UNSET_START, ScheduleStore, VestingSchedule
from .token_ledger import CustodyToken, TokenLedger, TokenLedgerError
from .vesting_calculator import effective_start, releasable_amount, vested_amount
from .vesting_engine import VestingEngine, VestingEvent
from .vesting_exceptions import (
    AllocationExceededError,
    AlreadyStartedError,
    DuplicateBeneficiaryError,
    InsufficientCustodyError,
    InvalidReasonError,
    PausedError,
    ScheduleNotFoundError,
    TransferFailedError,
    UnauthorizedError,
    ValidationError,
    VestingError,
)

__all__ = [
    # Engine
    "VestingEngine",
    "VestingEvent",
    # Components
    "CategoryLedger",
    "VestingCategory",
    "DEFAULT_CATEGORY_CAPS_TOKENS",
    "default_category_caps",
    "ScheduleStore",
    "VestingSchedule",
    "UNSET_START",
    "ReleaseExecutor",
    "ReleaseResult",
    "effective_start",
    "vested_amount",
    "releasable_amount",
    # Collaborators
    "Capability",
    "CapabilityChecker",
    "RoleBasedCapabilityChecker",
    "TokenLedger",
    "CustodyToken",
    "TokenLedgerError",
    # Errors
    "VestingError",
    "ValidationError",
    "AllocationExceededError",
    "DuplicateBeneficiaryError",
    "ScheduleNotFoundError",
    "UnauthorizedError",
    "PausedError",
    "AlreadyStartedError",
    "InvalidReasonError",
    "InsufficientCustodyError",
    "TransferFailedError",
]
