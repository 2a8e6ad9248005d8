"""Synced account model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Account:
    """
    A mailbox or workspace identity under sync.

    Attributes:
        id: Database id
        email: Account email address
        created_at: When the account was added
        deleted_at: Soft-delete timestamp; deleted accounts are never synced
    """

    id: int
    email: str
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None
