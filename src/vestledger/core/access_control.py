"""
Capability-based access control for the vesting engine.

The engine never hard-codes an owner. It asks an injected
``CapabilityChecker`` whether a caller holds a capability, which keeps the
engine testable without a specific access-control implementation.

``RoleBasedCapabilityChecker`` is the reference implementation:
- Role assignments per capability
- Only admins can grant/revoke roles
- Audit trail of role changes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Protocol, Set, runtime_checkable

from .schedules import normalize_beneficiary
from .structured_logger import truncate_address
from .vesting_exceptions import UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


def _identity(address: str) -> str:
    """Comparison key for a caller, matching how schedules key beneficiaries."""
    if not isinstance(address, str):
        return ""
    return address.strip().lower()


class Capability(Enum):
    """Capabilities the vesting engine checks for."""
    ADMIN = "admin"
    SCHEDULE_MANAGER = "schedule_manager"
    PAUSE_CONTROLLER = "pause_controller"


@runtime_checkable
class CapabilityChecker(Protocol):
    """Answers whether a caller may perform a class of actions."""

    def has_capability(self, caller: str, capability: Capability) -> bool:
        ...


@dataclass
class RoleBasedCapabilityChecker:
    """
    Role-based capability checker.

    Manages capability assignments and an audit log of every change. The
    initial admin passed at construction receives ``ADMIN``; ``deploy`` style
    setups usually grant all three capabilities to the same treasury address.
    """

    # Capability assignments: capability value -> set of addresses
    roles: Dict[str, Set[str]] = field(default_factory=dict)

    # Initial admin address
    admin_address: str = ""

    # Audit log
    role_changes: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        for capability in Capability:
            self.roles.setdefault(capability.value, set())

        self.admin_address = _identity(self.admin_address)
        if self.admin_address:
            self.roles[Capability.ADMIN.value].add(self.admin_address)

    def has_capability(self, caller: str, capability: Capability) -> bool:
        key = _identity(caller)
        if not key:
            return False
        return key in self.roles.get(capability.value, set())

    def grant_role(
        self,
        admin: str,
        capability: Capability,
        address: str,
        timestamp: int = 0,
    ) -> bool:
        """
        Grant a capability to an address.

        Args:
            admin: Caller granting the capability (must hold ADMIN)
            capability: Capability to grant
            address: Address receiving the capability
            timestamp: Instant recorded in the audit log

        Returns:
            True if the capability was granted

        Raises:
            UnauthorizedError: If caller is not admin
            ValidationError: If address is empty or the zero address
        """
        self._require_admin(admin)
        try:
            address_norm = normalize_beneficiary(address)
        except ValidationError:
            raise ValidationError("Cannot grant a role to an empty or zero address") from None
        self.roles[capability.value].add(address_norm)
        self._record_change("grant", capability, address_norm, admin, timestamp)

        logger.info(
            "Role granted",
            extra={
                "event": "rbac.role_granted",
                "role": capability.value,
                "address": truncate_address(address_norm),
                "admin": truncate_address(admin),
            },
        )
        return True

    def revoke_role(
        self,
        admin: str,
        capability: Capability,
        address: str,
        timestamp: int = 0,
    ) -> bool:
        """
        Revoke a capability from an address.

        Raises:
            UnauthorizedError: If caller is not admin
        """
        self._require_admin(admin)

        address_norm = _identity(address)
        self.roles[capability.value].discard(address_norm)
        self._record_change("revoke", capability, address_norm, admin, timestamp)

        logger.info(
            "Role revoked",
            extra={
                "event": "rbac.role_revoked",
                "role": capability.value,
                "address": truncate_address(address_norm),
                "admin": truncate_address(admin),
            },
        )
        return True

    def get_role_members(self, capability: Capability) -> Set[str]:
        """Get all addresses holding a capability."""
        return self.roles.get(capability.value, set()).copy()

    def get_user_roles(self, address: str) -> Set[str]:
        """Get all capabilities assigned to an address."""
        address_norm = _identity(address)
        return {role for role, members in self.roles.items() if address_norm in members}

    def _require_admin(self, caller: str) -> None:
        if not self.has_capability(caller, Capability.ADMIN):
            logger.warning(
                "Access denied: role management requires admin",
                extra={"event": "rbac.unauthorized", "caller": truncate_address(caller)},
            )
            raise UnauthorizedError(
                f"Unauthorized: caller {truncate_address(caller)} does not have role 'admin'"
            )

    def _record_change(
        self,
        action: str,
        capability: Capability,
        address: str,
        admin: str,
        timestamp: int,
    ) -> None:
        self.role_changes.append({
            "action": action,
            "role": capability.value,
            "address": address,
            "admin": _identity(admin),
            "timestamp": timestamp,
        })

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "admin_address": self.admin_address,
            "roles": {role: sorted(members) for role, members in self.roles.items()},
            "role_changes": list(self.role_changes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleBasedCapabilityChecker":
        # Saved role sets are authoritative; the initial admin is not re-seeded
        checker = cls(roles={role: set(members) for role, members in data.get("roles", {}).items()})
        checker.admin_address = data.get("admin_address", "")
        checker.role_changes = list(data.get("role_changes", []))
        return checker
