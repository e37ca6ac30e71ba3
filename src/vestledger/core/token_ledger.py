"""
Token ledger collaborator for the vesting engine.

The engine holds custody of tokens on a ledger it does not implement: it only
reads balances and asks the ledger to move tokens out of its custody address.
``TokenLedger`` is that contract. ``CustodyToken`` is an in-memory ERC20-style
ledger used by the CLI and the test suite:
- Balances, transfers, capped minting (owner only)
- A token-level pause flag (distinct from the engine's release gate)
- Transfer events and dict serialization

Security features:
- Zero address checks on all operations
- Balance underflow prevention
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, runtime_checkable

from .structured_logger import truncate_address

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class TokenLedgerError(Exception):
    """Raised by CustodyToken when a ledger operation is rejected."""
    pass


@runtime_checkable
class TokenLedger(Protocol):
    """Balance/transfer primitives the vesting engine relies on."""

    def balance_of(self, account: str) -> int:
        ...

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        ...


@dataclass
class TransferEvent:
    """A Transfer record emitted by CustodyToken."""

    from_address: str
    to_address: str
    value: int


@dataclass
class CustodyToken:
    """
    In-memory ERC20-style token ledger.

    Amounts are integers in base units. ``max_supply`` of 0 means uncapped.
    """

    name: str
    symbol: str
    decimals: int = 18
    total_supply: int = 0
    owner: str = ""
    max_supply: int = 0
    paused: bool = False

    balances: Dict[str, int] = field(default_factory=dict)
    events: List[TransferEvent] = field(default_factory=list)

    # ==================== View Functions ====================

    def balance_of(self, account: str) -> int:
        return self.balances.get(self._normalize(account), 0)

    # ==================== State-Changing Functions ====================

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        """
        Transfer tokens from sender to recipient.

        Args:
            sender: Address sending tokens
            recipient: Address receiving tokens
            amount: Amount to transfer

        Returns:
            True if successful

        Raises:
            TokenLedgerError: If the token is paused, the recipient is the
                zero address or the sender balance is too low
        """
        self._require_not_paused()
        sender_norm = self._normalize(sender)
        recipient_norm = self._normalize(recipient)

        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)

        sender_balance = self.balances.get(sender_norm, 0)
        if sender_balance < amount:
            raise TokenLedgerError(
                f"{self.symbol}: transfer amount exceeds balance ({amount} > {sender_balance})"
            )

        self.balances[sender_norm] = sender_balance - amount
        self.balances[recipient_norm] = self.balances.get(recipient_norm, 0) + amount
        self.events.append(TransferEvent(sender_norm, recipient_norm, amount))

        logger.debug(
            "Token transfer",
            extra={
                "event": "token.transfer",
                "token": self.symbol,
                "from": truncate_address(sender_norm),
                "to": truncate_address(recipient_norm),
                "amount": amount,
            },
        )
        return True

    def mint(self, minter: str, to: str, amount: int) -> bool:
        """
        Mint new tokens (owner only).

        Raises:
            TokenLedgerError: If minter is not the owner or the cap is hit
        """
        self._require_not_paused()
        if self._normalize(minter) != self._normalize(self.owner):
            raise TokenLedgerError(f"{self.symbol}: caller is not owner")

        to_norm = self._normalize(to)
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        if self.max_supply > 0 and self.total_supply + amount > self.max_supply:
            raise TokenLedgerError(
                f"{self.symbol}: mint would exceed max supply "
                f"({self.total_supply + amount} > {self.max_supply})"
            )

        self.total_supply += amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount
        self.events.append(TransferEvent(ZERO_ADDRESS, to_norm, amount))

        logger.info(
            "Token mint",
            extra={
                "event": "token.mint",
                "token": self.symbol,
                "to": truncate_address(to_norm),
                "amount": amount,
                "new_supply": self.total_supply,
            },
        )
        return True

    def pause(self) -> None:
        self.paused = True

    def unpause(self) -> None:
        self.paused = False

    # ==================== Helpers ====================

    def _normalize(self, address: str) -> str:
        return address.lower()

    def _validate_address(self, address: str, field_name: str) -> None:
        if not address or address == ZERO_ADDRESS:
            raise TokenLedgerError(f"{self.symbol}: {field_name} is zero address")

    def _validate_amount(self, amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TokenLedgerError(f"{self.symbol}: amount must be an integer")
        if amount < 0:
            raise TokenLedgerError(f"{self.symbol}: amount cannot be negative")

    def _require_not_paused(self) -> None:
        if self.paused:
            raise TokenLedgerError(f"{self.symbol}: token is paused")

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "total_supply": self.total_supply,
            "owner": self.owner,
            "max_supply": self.max_supply,
            "paused": self.paused,
            "balances": dict(self.balances),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustodyToken":
        token = cls(
            name=data["name"],
            symbol=data["symbol"],
            decimals=data.get("decimals", 18),
            total_supply=data.get("total_supply", 0),
            owner=data.get("owner", ""),
            max_supply=data.get("max_supply", 0),
            paused=data.get("paused", False),
        )
        token.balances = {k: int(v) for k, v in data.get("balances", {}).items()}
        return token
