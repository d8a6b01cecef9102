"""
Grant Store

Storage abstraction for the issuer's grant table.

- GrantStore: interface the CapabilityIssuer depends on
- InMemoryGrantStore: process-local table (grants never outlive the process)

The issuer is the only writer. Callers read grants through the issuer.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Optional

if TYPE_CHECKING:
    from .issuer import Grant


class GrantKey(NamedTuple):
    """Identity of a grant: one live grant per (subject, resource, task)."""

    subject_id: str
    resource_id: str
    task_id: str

    def __str__(self) -> str:
        return f"{self.subject_id}:{self.resource_id}:{self.task_id}"


class GrantStore(ABC):
    """Abstract grant table."""

    @abstractmethod
    def get(self, key: GrantKey) -> Optional["Grant"]:
        """Return the grant stored under ``key``, if any."""

    @abstractmethod
    def put(self, grant: "Grant") -> Optional["Grant"]:
        """Store ``grant`` under its key. Returns the grant it replaced, if any."""

    @abstractmethod
    def delete(self, key: GrantKey) -> Optional["Grant"]:
        """Remove and return the grant under ``key``, if any."""

    @abstractmethod
    def list_grants(self) -> List["Grant"]:
        """Snapshot of all stored grants."""

    @abstractmethod
    def secret_in_use(self, secret: str) -> bool:
        """True if some stored grant carries ``secret``."""

    def __len__(self) -> int:
        return len(self.list_grants())


class InMemoryGrantStore(GrantStore):
    """Dict-backed grant table."""

    def __init__(self):
        self._grants: Dict[GrantKey, "Grant"] = {}

    def get(self, key: GrantKey) -> Optional["Grant"]:
        return self._grants.get(key)

    def put(self, grant: "Grant") -> Optional["Grant"]:
        previous = self._grants.get(grant.key)
        self._grants[grant.key] = grant
        return previous

    def delete(self, key: GrantKey) -> Optional["Grant"]:
        return self._grants.pop(key, None)

    def list_grants(self) -> List["Grant"]:
        return list(self._grants.values())

    def secret_in_use(self, secret: str) -> bool:
        return any(g.session_secret == secret for g in self._grants.values())

    def __len__(self) -> int:
        return len(self._grants)
