"""
Entity Storage Module

Organization-scoped entity store. Every operation takes an explicit
OrgContext; records from one organization are never visible to another.
All monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
from dataclasses import dataclass
from contextlib import contextmanager
import json
import threading
import uuid


ORG_KEY = '_org_id'


class RecordNotFoundError(KeyError):
    """Record does not exist in the caller's organization"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"{table} record {record_id} not found")
        self.table = table
        self.record_id = record_id


@dataclass(frozen=True)
class OrgContext:
    """Organization (and optionally user) on whose behalf storage is accessed"""
    org_id: str
    user_id: Optional[str] = None

    def __post_init__(self):
        if not self.org_id:
            raise ValueError("Organization ID is required")


def _copy(data: Any) -> Any:
    # Round-trip through JSON so callers never share references with the store
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class EntityStore(ABC):
    """Abstract interface for organization-scoped entity storage"""

    @abstractmethod
    def list(self, ctx: OrgContext, table: str, order_by: Optional[str] = None,
             descending: bool = False) -> List[Dict[str, Any]]:
        """All records of a table in the organization"""
        pass

    @abstractmethod
    def filter(self, ctx: OrgContext, table: str, filters: Dict[str, Any],
               order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        """Records whose fields equal every value in ``filters``"""
        pass

    @abstractmethod
    def get(self, ctx: OrgContext, table: str, record_id: str) -> Dict[str, Any]:
        """Load one record; raises RecordNotFoundError"""
        pass

    @abstractmethod
    def create(self, ctx: OrgContext, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record, assigning an id when missing"""
        pass

    @abstractmethod
    def update(self, ctx: OrgContext, table: str, record_id: str,
               changes: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``changes`` into a record; raises RecordNotFoundError"""
        pass

    @abstractmethod
    def delete(self, ctx: OrgContext, table: str, record_id: str) -> bool:
        """Delete a record, returning whether it existed"""
        pass

    def create_many(self, ctx: OrgContext, table: str,
                    records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert several records"""
        with self.atomic():
            return [self.create(ctx, table, record) for record in records]

    def delete_where(self, ctx: OrgContext, table: str, filters: Dict[str, Any]) -> int:
        """Delete every matching record, returning how many were removed"""
        with self.atomic():
            deleted = 0
            for record in self.filter(ctx, table, filters):
                if self.delete(ctx, table, record['id']):
                    deleted += 1
            return deleted

    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryEntityStore(EntityStore):
    """In-memory entity store for tests and single-process deployments"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def _owned(self, ctx: OrgContext, table: str) -> List[Dict[str, Any]]:
        return [r for r in self._table(table).values() if r.get(ORG_KEY) == ctx.org_id]

    @staticmethod
    def _ordered(records: List[Dict[str, Any]], order_by: Optional[str],
                 descending: bool) -> List[Dict[str, Any]]:
        if order_by is None:
            return records

        def sort_key(record):
            value = record.get(order_by)
            # Missing values sort first
            return (value is not None, value if value is not None else 0)

        return sorted(records, key=sort_key, reverse=descending)

    def list(self, ctx: OrgContext, table: str, order_by: Optional[str] = None,
             descending: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            records = self._ordered(self._owned(ctx, table), order_by, descending)
            return [_copy(r) for r in records]

    def filter(self, ctx: OrgContext, table: str, filters: Dict[str, Any],
               order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            wanted = _copy(filters)
            records = [r for r in self._owned(ctx, table) if _matches(r, wanted)]
            return [_copy(r) for r in self._ordered(records, order_by, descending)]

    def get(self, ctx: OrgContext, table: str, record_id: str) -> Dict[str, Any]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None or record.get(ORG_KEY) != ctx.org_id:
                raise RecordNotFoundError(table, record_id)
            return _copy(record)

    def create(self, ctx: OrgContext, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = _copy(data)
            record.setdefault('id', str(uuid.uuid4()))
            if record['id'] is None:
                record['id'] = str(uuid.uuid4())
            record[ORG_KEY] = ctx.org_id
            rows = self._table(table)
            if record['id'] in rows:
                raise ValueError(f"{table} record {record['id']} already exists")
            rows[record['id']] = record
            return _copy(record)

    def update(self, ctx: OrgContext, table: str, record_id: str,
               changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None or record.get(ORG_KEY) != ctx.org_id:
                raise RecordNotFoundError(table, record_id)
            updated = dict(record)
            updated.update(_copy(changes))
            updated['id'] = record_id
            updated[ORG_KEY] = ctx.org_id
            self._table(table)[record_id] = updated
            return _copy(updated)

    def delete(self, ctx: OrgContext, table: str, record_id: str) -> bool:
        with self._lock:
            rows = self._table(table)
            record = rows.get(record_id)
            if record is None or record.get(ORG_KEY) != ctx.org_id:
                return False
            del rows[record_id]
            return True

    def count(self, ctx: OrgContext, table: str) -> int:
        with self._lock:
            return len(self._owned(ctx, table))

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._snapshots.append(_copy(self._data))

    def commit(self) -> None:
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        self._data = self._snapshots.pop()
        self._lock.release()
