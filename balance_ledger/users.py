"""
User Directory Module

The balance engine only needs to know whether a user exists. Users are owned
by the directory; the engine never creates or deletes them.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from .errors import UserNotFound

if TYPE_CHECKING:
    from .storage import LedgerStore


@dataclass(frozen=True)
class User:
    """Ledger account holder"""
    id: int
    name: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class UserDirectory(ABC):
    """Abstract lookup of users by id"""

    @abstractmethod
    def find(self, user_id: int) -> Optional[User]:
        """Return the user or None"""
        pass

    def exists(self, user_id: int) -> bool:
        return self.find(user_id) is not None

    def get(self, user_id: int) -> User:
        """Return the user or raise UserNotFound"""
        user = self.find(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user


class StoreUserDirectory(UserDirectory):
    """User directory backed by the users table of a ledger store"""

    def __init__(self, store: 'LedgerStore'):
        self.store = store

    def find(self, user_id: int) -> Optional[User]:
        return self.store.load_user(user_id)

    def register(self, name: str, email: Optional[str] = None) -> User:
        """Create a user; the store assigns the id"""
        if not name or not name.strip():
            raise ValueError("User name is required")
        return self.store.add_user(name.strip(), email)
