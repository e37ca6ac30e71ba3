"""
Master vesting engine.

Distributes a fixed token pool held in custody to many beneficiaries
according to per-beneficiary schedules grouped into capped categories.

Composition:
- CategoryLedger: per-category caps and committed totals
- ScheduleStore: one record per beneficiary
- vesting_calculator: pure vested/releasable math
- ReleaseExecutor: ledger transfer plus bookkeeping
- VestingEngine (this module): authorization, pause gate, global start,
  category caps, revocation and the emergency withdrawal escape hatch

Every mutating operation runs under a single re-entrant lock and validates
fully before it writes anything, so a failed call leaves no trace. The
engine never reads a clock: each call receives ``now`` explicitly.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from . import vesting_metrics
from .access_control import Capability, CapabilityChecker, RoleBasedCapabilityChecker
from .categories import CategoryLedger, VestingCategory
from .release_executor import ReleaseExecutor, ReleaseResult
from .schedules import ScheduleStore, VestingSchedule, normalize_beneficiary
from .structured_logger import truncate_address
from .token_ledger import TokenLedger
from .vesting_calculator import (
    effective_start,
    releasable_amount,
    vested_amount,
    vesting_status,
)
from .vesting_exceptions import (
    AlreadyStartedError,
    DuplicateBeneficiaryError,
    InsufficientCustodyError,
    InvalidReasonError,
    PausedError,
    TransferFailedError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class VestingEvent:
    """Audit record of an engine state change."""

    event_type: str
    timestamp: int
    actor: str = ""
    beneficiary: str = ""
    amount: int = 0
    data: Dict[str, Any] = field(default_factory=dict)


class VestingEngine:
    """
    Vesting engine with capped categories, cliffs, revocation and solvency.

    Capabilities:
    - SCHEDULE_MANAGER: create schedules, release on behalf of beneficiaries
    - ADMIN: revoke/restore, global start, category caps, emergency withdrawal
    - PAUSE_CONTROLLER: pause/unpause releases
    """

    def __init__(
        self,
        token: TokenLedger,
        custody_address: str,
        capabilities: CapabilityChecker,
        global_vesting_start: int,
        now: int | None = None,
        category_caps: Mapping[VestingCategory, int] | None = None,
        enforce_solvency: bool = True,
    ):
        """
        Args:
            token: Ledger holding the engine's custody balance
            custody_address: Address under which the engine holds tokens
            capabilities: Capability checker consulted for every privileged call
            global_vesting_start: Shared start for schedules without their own
            now: Construction instant; when given, the start must lie after it
            category_caps: Caps in base units (launch defaults when None)
            enforce_solvency: Refuse obligations the custody balance cannot cover

        Raises:
            ValidationError: On a missing collaborator, invalid custody
                address or a global start not in the future
        """
        if token is None:
            raise ValidationError("Invalid token address")
        if capabilities is None:
            raise ValidationError("Capability checker required")
        try:
            custody = normalize_beneficiary(custody_address)
        except ValidationError:
            raise ValidationError("Invalid address") from None
        if not isinstance(global_vesting_start, int) or global_vesting_start < 0:
            raise ValidationError("Invalid global vesting start")
        if now is not None and global_vesting_start <= now:
            raise ValidationError("Start time must be in future")

        self.token = token
        self.custody_address = custody
        self.capabilities = capabilities
        self.global_vesting_start = global_vesting_start
        self.enforce_solvency = enforce_solvency
        self.paused = False
        self.total_released = 0

        self.categories = CategoryLedger(category_caps)
        self.schedules = ScheduleStore(self.categories)
        self.executor = ReleaseExecutor(self.schedules, token, custody)

        self.events: List[VestingEvent] = []
        self.emergency_withdrawals: List[Dict[str, Any]] = []

        self._lock = threading.RLock()

        logger.info(
            "Vesting engine initialized",
            extra={
                "event": "vesting.engine_initialized",
                "custody": truncate_address(custody),
                "global_vesting_start": global_vesting_start,
            },
        )

    @classmethod
    def deploy(
        cls,
        token: TokenLedger,
        custody_address: str,
        admin: str,
        global_vesting_start: int,
        now: int,
        category_caps: Mapping[VestingCategory, int] | None = None,
    ) -> "VestingEngine":
        """
        Create an engine whose admin holds every capability.

        Raises:
            ValidationError: If the admin address is empty or the zero address
        """
        try:
            admin_norm = normalize_beneficiary(admin)
        except ValidationError:
            raise ValidationError("Invalid address") from None

        checker = RoleBasedCapabilityChecker(admin_address=admin_norm)
        checker.roles[Capability.SCHEDULE_MANAGER.value].add(admin_norm)
        checker.roles[Capability.PAUSE_CONTROLLER.value].add(admin_norm)
        return cls(
            token,
            custody_address,
            checker,
            global_vesting_start,
            now=now,
            category_caps=category_caps,
        )

    # ==================== Schedule Creation ====================

    def add_vesting(
        self,
        caller: str,
        beneficiary: str,
        amount: int,
        start: int | None,
        cliff: int,
        duration: int,
        category: VestingCategory | str | int,
        *,
        now: int,
    ) -> VestingSchedule:
        """
        Create a vesting schedule for ``beneficiary``.

        Args:
            caller: Must hold SCHEDULE_MANAGER
            beneficiary: Identity receiving the tokens
            amount: Total amount in base units (> 0)
            start: Custom start instant; None or 0 follows the global start
            cliff: Seconds after start before anything is releasable
            duration: Total vesting seconds (> 0, >= cliff)
            category: Allocation category
            now: Current instant

        Returns:
            Copy of the stored schedule

        Raises:
            UnauthorizedError, ValidationError, DuplicateBeneficiaryError,
            AllocationExceededError, InsufficientCustodyError
        """
        with self._lock:
            self._require(caller, Capability.SCHEDULE_MANAGER)
            prepared = self.schedules.prepare_schedule(
                beneficiary, amount, start, cliff, duration, category
            )
            self.categories.check_allocation(prepared.category, prepared.total_amount)
            self._require_solvent_after(prepared.total_amount)

            schedule = self.schedules.add_schedule(
                beneficiary, amount, start, cliff, duration, prepared.category
            )
            self._after_schedule_added(caller, schedule, now)
            return schedule

    def add_vesting_batch(
        self,
        caller: str,
        entries: Sequence[Mapping[str, Any]],
        *,
        now: int,
    ) -> List[VestingSchedule]:
        """
        Create many schedules at once, all or nothing.

        Each entry is a mapping with ``beneficiary``, ``amount``,
        ``duration``, ``category`` and optionally ``start`` and ``cliff``.
        Every entry is checked (including duplicates inside the batch and the
        cumulative per-category total) before any schedule is stored.
        """
        with self._lock:
            self._require(caller, Capability.SCHEDULE_MANAGER)
            if not entries:
                raise ValidationError("Batch must contain at least one schedule")

            prepared: List[VestingSchedule] = []
            seen: set[str] = set()
            per_category: Dict[VestingCategory, int] = {}
            for entry in entries:
                try:
                    schedule = self.schedules.prepare_schedule(
                        entry["beneficiary"],
                        entry["amount"],
                        entry.get("start"),
                        entry.get("cliff", 0),
                        entry["duration"],
                        entry["category"],
                    )
                except KeyError as exc:
                    raise ValidationError(f"Batch entry missing field {exc}") from None
                if schedule.beneficiary in seen:
                    raise DuplicateBeneficiaryError(
                        "Vesting already exists", details={"beneficiary": schedule.beneficiary}
                    )
                seen.add(schedule.beneficiary)
                per_category[schedule.category] = (
                    per_category.get(schedule.category, 0) + schedule.total_amount
                )
                prepared.append(schedule)

            for category, amount in per_category.items():
                self.categories.check_allocation(category, amount)
            self._require_solvent_after(sum(s.total_amount for s in prepared))

            created = []
            for schedule in prepared:
                stored = self.schedules.add_schedule(
                    schedule.beneficiary,
                    schedule.total_amount,
                    schedule.start,
                    schedule.cliff_duration,
                    schedule.total_duration,
                    schedule.category,
                )
                self._after_schedule_added(caller, stored, now)
                created.append(stored)
            return created

    def _after_schedule_added(self, caller: str, schedule: VestingSchedule, now: int) -> None:
        self._emit(
            "VestingAdded",
            now,
            actor=caller,
            beneficiary=schedule.beneficiary,
            amount=schedule.total_amount,
            data={"category": schedule.category.value},
        )
        vesting_metrics.update_category_allocated(
            schedule.category.value, self.categories.stats(schedule.category)["allocated"]
        )
        logger.info(
            "Vesting schedule created",
            extra={
                "event": "vesting.schedule_created",
                "beneficiary": truncate_address(schedule.beneficiary),
                "amount": schedule.total_amount,
                "category": schedule.category.value,
                "cliff": schedule.cliff_duration,
                "duration": schedule.total_duration,
            },
        )

    # ==================== Releases ====================

    def release(self, caller: str, beneficiary: str | None = None, *, now: int) -> ReleaseResult:
        """
        Release the caller's (or a managed beneficiary's) releasable tokens.

        The caller must be the beneficiary or hold SCHEDULE_MANAGER. A zero
        releasable amount is a successful no-op.

        Raises:
            UnauthorizedError, PausedError, ScheduleNotFoundError,
            TransferFailedError
        """
        target = caller if beneficiary is None else beneficiary
        with self._lock:
            if not self._same_identity(caller, target):
                self._require(caller, Capability.SCHEDULE_MANAGER)
            return self._release(caller, target, now)

    def release_for(self, caller: str, beneficiary: str, *, now: int) -> ReleaseResult:
        """
        Administrative release on behalf of a beneficiary.

        The caller must hold SCHEDULE_MANAGER or ADMIN.
        """
        with self._lock:
            if not (
                self.capabilities.has_capability(caller, Capability.SCHEDULE_MANAGER)
                or self.capabilities.has_capability(caller, Capability.ADMIN)
            ):
                self._deny(caller, Capability.SCHEDULE_MANAGER)
            return self._release(caller, beneficiary, now)

    def _release(self, caller: str, beneficiary: str, now: int) -> ReleaseResult:
        if self.paused:
            raise PausedError("Pausable: paused")
        result = self.executor.execute(beneficiary, self.global_vesting_start, now)
        if result.amount > 0:
            self.total_released += result.amount
            self._emit(
                "TokensReleased",
                now,
                actor=caller,
                beneficiary=result.beneficiary,
                amount=result.amount,
            )
            vesting_metrics.update_custody_balance(self.custody_balance())
        return result

    # ==================== Revocation ====================

    def revoke_vesting(self, caller: str, beneficiary: str, *, now: int) -> VestingSchedule:
        """
        Stop further releases for a beneficiary.

        Released amounts and the category allocation are left as they are.
        """
        with self._lock:
            self._require(caller, Capability.ADMIN)
            schedule = self.schedules.revoke(beneficiary)
            self._emit("VestingRevoked", now, actor=caller, beneficiary=schedule.beneficiary)
            logger.warning(
                "Vesting revoked",
                extra={"event": "vesting.revoked", "beneficiary": truncate_address(schedule.beneficiary)},
            )
            return schedule

    def restore_vesting(self, caller: str, beneficiary: str, *, now: int) -> VestingSchedule:
        """
        Undo a revocation; vesting resumes as if it had never been revoked.

        Raises:
            InsufficientCustodyError: If custody cannot cover the restored obligation
        """
        with self._lock:
            self._require(caller, Capability.ADMIN)
            current = self.schedules.get(beneficiary)
            if current.revoked:
                self._require_solvent_after(current.unreleased_amount)
            schedule = self.schedules.restore(beneficiary)
            self._emit("VestingRestored", now, actor=caller, beneficiary=schedule.beneficiary)
            logger.info(
                "Vesting restored",
                extra={"event": "vesting.restored", "beneficiary": truncate_address(schedule.beneficiary)},
            )
            return schedule

    # ==================== Admin Controls ====================

    def update_global_vesting_start(self, caller: str, new_start: int, *, now: int) -> int:
        """
        Move the global vesting start. Only allowed before it has been reached.

        Returns:
            The previous global start

        Raises:
            UnauthorizedError, AlreadyStartedError, ValidationError
        """
        with self._lock:
            self._require(caller, Capability.ADMIN)
            if now >= self.global_vesting_start:
                raise AlreadyStartedError(
                    "Vesting already started",
                    details={"global_vesting_start": self.global_vesting_start, "now": now},
                )
            if not isinstance(new_start, int) or isinstance(new_start, bool) or new_start <= now:
                raise ValidationError("Start time must be in future", details={"new_start": new_start})

            previous = self.global_vesting_start
            self.global_vesting_start = new_start
            self._emit(
                "GlobalStartUpdated",
                now,
                actor=caller,
                data={"previous": previous, "new": new_start},
            )
            logger.info(
                "Global vesting start updated",
                extra={"event": "vesting.global_start_updated", "previous": previous, "new": new_start},
            )
            return previous

    def update_category_allocation(
        self,
        caller: str,
        category: VestingCategory | str | int,
        new_max: int,
        *,
        now: int,
    ) -> int:
        """
        Change a category cap.

        Returns:
            The previous cap

        Raises:
            UnauthorizedError, ValidationError (cap below already allocated)
        """
        with self._lock:
            self._require(caller, Capability.ADMIN)
            category = VestingCategory.parse(category)
            previous = self.categories.update_cap(category, new_max)
            self._emit(
                "CategoryAllocationUpdated",
                now,
                actor=caller,
                data={"category": category.value, "previous": previous, "new": new_max},
            )
            logger.info(
                "Category allocation updated",
                extra={
                    "event": "vesting.category_cap_updated",
                    "category": category.value,
                    "previous": previous,
                    "new": new_max,
                },
            )
            return previous

    def pause(self, caller: str, *, now: int) -> None:
        """Block release/release_for. Administrative calls stay available."""
        with self._lock:
            self._require(caller, Capability.PAUSE_CONTROLLER)
            if self.paused:
                raise ValidationError("Pausable: paused")
            self.paused = True
            self._emit("Paused", now, actor=caller)
            logger.warning(
                "Releases paused",
                extra={"event": "vesting.paused", "caller": truncate_address(caller)},
            )

    def unpause(self, caller: str, *, now: int) -> None:
        with self._lock:
            self._require(caller, Capability.PAUSE_CONTROLLER)
            if not self.paused:
                raise ValidationError("Pausable: not paused")
            self.paused = False
            self._emit("Unpaused", now, actor=caller)
            logger.info(
                "Releases unpaused",
                extra={"event": "vesting.unpaused", "caller": truncate_address(caller)},
            )

    def emergency_withdraw(
        self,
        caller: str,
        to: str,
        amount: int,
        reason: str,
        *,
        now: int,
    ) -> Dict[str, Any]:
        """
        Move tokens out of custody, bypassing all schedule accounting.

        This is the engine's trust boundary: only ADMIN may call it, a reason
        is mandatory, and every withdrawal is logged at CRITICAL and kept in
        ``emergency_withdrawals``. It works while paused and does not check
        solvency; a withdrawal that leaves custody short of outstanding
        obligations is logged as such.

        Returns:
            The audit record

        Raises:
            UnauthorizedError, InvalidReasonError, ValidationError,
            TransferFailedError
        """
        with self._lock:
            self._require(caller, Capability.ADMIN)
            if not isinstance(reason, str) or not reason.strip():
                raise InvalidReasonError("Reason required")
            recipient = normalize_beneficiary(to)
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError("Amount must be greater than zero", details={"amount": amount})

            try:
                ok = self.token.transfer(self.custody_address, recipient, amount)
            except Exception as exc:
                logger.error(
                    "Emergency withdrawal transfer failed: %s",
                    exc,
                    extra={
                        "event": "vesting.emergency_withdraw_failed",
                        "to": truncate_address(recipient),
                        "amount": amount,
                    },
                )
                raise TransferFailedError(
                    f"Token transfer failed: {exc}", details={"to": recipient, "amount": amount}
                ) from exc
            if not ok:
                raise TransferFailedError(
                    "Token transfer rejected by ledger", details={"to": recipient, "amount": amount}
                )

            record = {
                "caller": caller.strip().lower(),
                "to": recipient,
                "amount": amount,
                "reason": reason.strip(),
                "timestamp": now,
            }
            self.emergency_withdrawals.append(record)
            self._emit("EmergencyWithdraw", now, actor=caller, amount=amount, data=dict(record))
            vesting_metrics.record_emergency_withdrawal()
            vesting_metrics.update_custody_balance(self.custody_balance())

            logger.critical(
                "EMERGENCY WITHDRAWAL executed",
                extra={
                    "event": "vesting.emergency_withdraw",
                    "caller": truncate_address(caller),
                    "to": truncate_address(recipient),
                    "amount": amount,
                    "reason": record["reason"],
                },
            )
            report = self.solvency_report()
            if not report["solvent"]:
                logger.warning(
                    "Custody no longer covers outstanding obligations",
                    extra={"event": "vesting.insolvent", **report},
                )
            return record

    # ==================== View Functions ====================

    def get_vesting(self, beneficiary: str) -> VestingSchedule:
        with self._lock:
            return self.schedules.get(beneficiary)

    def get_vestings(self, beneficiaries: Sequence[str]) -> List[VestingSchedule]:
        with self._lock:
            return self.schedules.get_many(list(beneficiaries))

    def releasable(self, beneficiary: str, *, now: int) -> int:
        with self._lock:
            return releasable_amount(self.schedules.get(beneficiary), self.global_vesting_start, now)

    def vested_amount(self, beneficiary: str, *, now: int) -> int:
        with self._lock:
            return vested_amount(self.schedules.get(beneficiary), self.global_vesting_start, now)

    def effective_start(self, beneficiary: str) -> int:
        with self._lock:
            return effective_start(self.schedules.get(beneficiary), self.global_vesting_start)

    def get_vesting_info(self, beneficiary: str, *, now: int) -> Dict[str, Any]:
        with self._lock:
            return vesting_status(self.schedules.get(beneficiary), self.global_vesting_start, now)

    def get_category_stats(self, category: VestingCategory | str | int) -> Dict[str, int]:
        with self._lock:
            return self.categories.stats(VestingCategory.parse(category))

    def get_all_category_stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return self.categories.all_stats()

    def custody_balance(self) -> int:
        return self.token.balance_of(self.custody_address)

    def get_contract_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total_allocated": self.categories.total_allocated,
                "total_released": self.total_released,
                "custody_balance": self.custody_balance(),
            }

    def outstanding_obligations(self) -> int:
        """Sum of unreleased amounts over non-revoked schedules."""
        with self._lock:
            return sum(s.unreleased_amount for s in self.schedules if not s.revoked)

    def solvency_report(self) -> Dict[str, Any]:
        with self._lock:
            obligations = self.outstanding_obligations()
            balance = self.custody_balance()
            return {
                "obligations": obligations,
                "custody_balance": balance,
                "surplus": balance - obligations,
                "solvent": balance >= obligations,
            }

    # ==================== Helpers ====================

    def _require(self, caller: str, capability: Capability) -> None:
        if not self.capabilities.has_capability(caller, capability):
            self._deny(caller, capability)

    def _deny(self, caller: str, capability: Capability) -> None:
        logger.warning(
            "Access denied: capability not held",
            extra={
                "event": "vesting.unauthorized",
                "caller": truncate_address(caller),
                "required": capability.value,
            },
        )
        raise UnauthorizedError(
            f"Unauthorized: caller {truncate_address(caller)} lacks capability '{capability.value}'"
        )

    def _require_solvent_after(self, additional: int) -> None:
        if not self.enforce_solvency:
            return
        obligations = sum(s.unreleased_amount for s in self.schedules if not s.revoked)
        balance = self.custody_balance()
        if balance < obligations + additional:
            raise InsufficientCustodyError(
                "Insufficient custody balance for vesting obligations",
                details={
                    "custody_balance": balance,
                    "obligations": obligations,
                    "requested": additional,
                },
            )

    @staticmethod
    def _same_identity(caller: str, beneficiary: str) -> bool:
        if not isinstance(caller, str) or not isinstance(beneficiary, str):
            return False
        return bool(caller.strip()) and caller.strip().lower() == beneficiary.strip().lower()

    def _emit(
        self,
        event_type: str,
        now: int,
        actor: str = "",
        beneficiary: str = "",
        amount: int = 0,
        data: Dict[str, Any] | None = None,
    ) -> None:
        self.events.append(
            VestingEvent(
                event_type=event_type,
                timestamp=now,
                actor=(actor or "").strip().lower(),
                beneficiary=beneficiary,
                amount=amount,
                data=data or {},
            )
        )

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        """Serialize engine state (collaborators are serialized separately)."""
        with self._lock:
            return {
                "custody_address": self.custody_address,
                "global_vesting_start": self.global_vesting_start,
                "paused": self.paused,
                "total_released": self.total_released,
                "enforce_solvency": self.enforce_solvency,
                "categories": self.categories.to_dict(),
                "schedules": self.schedules.to_dict(),
                "events": [asdict(event) for event in self.events],
                "emergency_withdrawals": list(self.emergency_withdrawals),
            }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        token: TokenLedger,
        capabilities: CapabilityChecker,
    ) -> "VestingEngine":
        """Rebuild an engine from ``to_dict`` output and its collaborators."""
        categories = CategoryLedger.from_dict(data["categories"])
        engine = cls(
            token,
            data["custody_address"],
            capabilities,
            int(data["global_vesting_start"]),
            enforce_solvency=bool(data.get("enforce_solvency", True)),
        )
        engine.categories = categories
        engine.schedules = ScheduleStore(categories)
        engine.schedules.load(data.get("schedules", {}))
        engine.executor = ReleaseExecutor(engine.schedules, token, engine.custody_address)
        engine.paused = bool(data.get("paused", False))
        engine.total_released = int(data.get("total_released", 0))
        engine.events = [VestingEvent(**event) for event in data.get("events", [])]
        engine.emergency_withdrawals = list(data.get("emergency_withdrawals", []))
        return engine
