"""
In-memory audit store for tests and single-process deployments.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from clinicinsights.application.ports.repositories.audit_store import AuditStore
from clinicinsights.core.exceptions import AuditError
from clinicinsights.domain.audit import SORT_FIELDS, AuditEntry, AuditFilter


def _lookup(document: Dict[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches_filter(document: Dict[str, Any], audit_filter: AuditFilter) -> bool:
    for name in ("execution_id", "pipeline_type", "patient_id", "session_id", "user_id", "organization_id"):
        expected = getattr(audit_filter, name)
        if expected is not None and document.get(name) != expected:
            return False

    timestamp = document.get("timestamp")
    if audit_filter.start_date and timestamp < audit_filter.start_date:
        return False
    if audit_filter.end_date and timestamp > audit_filter.end_date:
        return False
    if audit_filter.success is not None and _lookup(document, "response.success") != audit_filter.success:
        return False
    if audit_filter.cache_hit is not None and _lookup(document, "performance.cache_hit") != audit_filter.cache_hit:
        return False
    return True


class InMemoryAuditStore(AuditStore):
    """Keeps audit documents in a dict keyed by execution id."""

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise AuditError("In-memory audit store is unavailable")

    async def insert(self, entry: AuditEntry) -> None:
        self._check_available()
        self._documents[entry.execution_id] = entry.to_document()

    async def update(self, execution_id: str, fields: Dict[str, Any]) -> bool:
        self._check_available()
        document = self._documents.get(execution_id)
        if document is None:
            return False
        for section, value in fields.items():
            if section == "metadata":
                document.setdefault("metadata", {}).update(copy.deepcopy(value))
            else:
                document[section] = copy.deepcopy(value)
        return True

    async def find(self, audit_filter: AuditFilter) -> Tuple[List[AuditEntry], int]:
        self._check_available()
        matched = [doc for doc in self._documents.values() if matches_filter(doc, audit_filter)]

        sort_path = SORT_FIELDS.get(audit_filter.order_by, "timestamp")
        reverse = audit_filter.order_direction.lower() != "asc"
        matched.sort(key=lambda doc: _sort_key(_lookup(doc, sort_path)), reverse=reverse)

        total = len(matched)
        page = matched[audit_filter.offset:]
        if audit_filter.limit is not None:
            page = page[: audit_filter.limit]
        return [AuditEntry.from_document(copy.deepcopy(doc)) for doc in page], total

    async def count_before(self, cutoff: datetime) -> int:
        self._check_available()
        return sum(1 for doc in self._documents.values() if doc["timestamp"] < cutoff)

    async def delete_before(self, cutoff: datetime) -> int:
        self._check_available()
        stale = [key for key, doc in self._documents.items() if doc["timestamp"] < cutoff]
        for key in stale:
            del self._documents[key]
        return len(stale)

    async def ping(self) -> None:
        self._check_available()


def _sort_key(value: Optional[Any]):
    # None sorts below every value regardless of type
    return (value is not None, value if value is not None else 0)
