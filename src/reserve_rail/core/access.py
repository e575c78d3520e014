"""
Access Control

Fee withdrawal is restricted to a single privileged principal. The ledger only
asks ``is_privileged(caller)``; ownership bookkeeping lives here.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional
import structlog

from .errors import Unauthorized

logger = structlog.get_logger()


class AccessControl(ABC):
    """Collaborator deciding who may withdraw operator fees."""

    @abstractmethod
    def is_privileged(self, caller: str) -> bool:
        pass


class OwnerAccessControl(AccessControl):
    """
    Single-owner access control.

    The owner may hand over ownership or renounce it. Once renounced no
    caller is privileged.
    """

    def __init__(self, owner: str):
        self._owner: Optional[str] = owner
        self._lock = Lock()

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def is_privileged(self, caller: str) -> bool:
        return self._owner is not None and caller == self._owner

    def require_owner(self, caller: str) -> None:
        if not self.is_privileged(caller):
            raise Unauthorized(f"Caller is not the owner: {caller}")

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        """Hand ownership to ``new_owner``. Owner only."""
        if not new_owner:
            raise ValueError("New owner must be a non-empty account id")

        with self._lock:
            self.require_owner(caller)
            previous = self._owner
            self._owner = new_owner

        logger.info("ownership_transferred", previous_owner=previous, new_owner=new_owner)

    def renounce_ownership(self, caller: str) -> None:
        """Leave the ledger without an owner. Owner only."""
        with self._lock:
            self.require_owner(caller)
            self._owner = None

        logger.warning("ownership_renounced", previous_owner=caller)
