"""Data models for portal record synchronization."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DuplicatePolicy(str, Enum):
    """Which record wins when an external id repeats within one fetch."""
    KEEP_FIRST = 'first'
    KEEP_LAST = 'last'


@dataclass
class ExternalRecord:
    """Record fetched from the portal, keyed by the portal-assigned id.

    insert_fields are written only when the record is created and are
    never compared or overwritten afterwards.
    """
    external_id: str
    fields: Dict[str, Any]
    insert_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LocalRecord:
    """Record persisted in the local store."""
    local_id: str
    external_id: Optional[str]
    fields: Dict[str, Any]


@dataclass(frozen=True)
class CrossReference:
    """Field resolved through a lookup table during mapping.

    The value of source_field is looked up in SyncContext.lookups[table]
    and written to target_field. An insert_only reference reads and writes
    insert_fields, is resolved for new records only, and drops its source
    field once resolved.
    """
    source_field: str
    target_field: str
    table: str
    insert_only: bool = False


@dataclass
class SyncContext:
    """Lookups and options shared by one reconciliation pass."""
    lookups: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cross_references: List[CrossReference] = field(default_factory=list)
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.KEEP_FIRST
    delete_missing: bool = True

    def resolve(self, table: str, key: Any) -> Optional[Any]:
        """Look up key in table, returning None when either is unknown."""
        if key is None:
            return None
        return self.lookups.get(table, {}).get(str(key))


@dataclass
class ReconciliationPlan:
    """Actions needed to bring the local store in line with the portal."""
    to_insert: List[ExternalRecord] = field(default_factory=list)
    to_update: List[Tuple[LocalRecord, ExternalRecord]] = field(default_factory=list)
    to_delete: List[LocalRecord] = field(default_factory=list)
    unchanged: List[LocalRecord] = field(default_factory=list)
    unmapped: List[LocalRecord] = field(default_factory=list)
    retained: List[LocalRecord] = field(default_factory=list)
    duplicates_dropped: int = 0
    invalid_dropped: int = 0
    unresolved: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Result of applying a reconciliation plan."""
    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
