"""
Audit store interface for execution audit entries.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Tuple

from clinicinsights.domain.audit import AuditEntry, AuditFilter


class AuditStore(ABC):
    """Abstract persistent audit store."""

    @abstractmethod
    async def insert(self, entry: AuditEntry) -> None:
        """Append a new entry."""
        pass

    @abstractmethod
    async def update(self, execution_id: str, fields: Dict[str, Any]) -> bool:
        """Patch top-level sections of an existing entry; False if absent."""
        pass

    @abstractmethod
    async def find(self, audit_filter: AuditFilter) -> Tuple[List[AuditEntry], int]:
        """Return one ordered page of matching entries and the total match count."""
        pass

    @abstractmethod
    async def count_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Delete entries older than ``cutoff``; returns the number removed."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Cheap round trip; raises if the store is unreachable."""
        pass
