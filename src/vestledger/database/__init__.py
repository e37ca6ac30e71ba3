"""Persistence for vestledger state."""

from .storage_manager import StorageManager

__all__ = ["StorageManager"]
