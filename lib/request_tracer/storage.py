"""
Storage adapter protocol and an in-memory implementation.

The tracking client depends only on StorageAdapter. The in-memory adapter is
thread-safe and implements the same filter, ordering and aggregation rules as
the SQLAlchemy adapter, which makes it suitable for tests and short-lived
processes.
"""
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from lib.request_tracer.errors import RecordNotFoundError
from lib.request_tracer.models import (
    AggregateResult,
    RequestFilter,
    RequestRecord,
    ensure_utc,
)

logger = logging.getLogger(__name__)

# Fields an aggregation can group by; anything else is ignored
GROUPABLE_FIELDS = ('provider', 'model')


class StorageAdapter(Protocol):
    """
    Protocol for persisting and querying request records.

    Every operation raises on failure. get() and delete() raise
    RecordNotFoundError for unknown ids.
    """

    def save(self, record: RequestRecord) -> None:
        ...

    def get(self, record_id: str) -> RequestRecord:
        ...

    def get_by_trace_id(self, trace_id: str) -> List[RequestRecord]:
        ...

    def query(self, request_filter: Optional[RequestFilter] = None) -> List[RequestRecord]:
        ...

    def aggregate(
        self,
        group_by: Sequence[str],
        request_filter: Optional[RequestFilter] = None
    ) -> List[AggregateResult]:
        ...

    def delete(self, record_id: str) -> None:
        ...

    def delete_older_than(self, before: datetime) -> int:
        ...

    def close(self) -> None:
        ...


def normalize_group_by(group_by: Optional[Sequence[str]]) -> List[str]:
    """Keep supported group fields, in order, without duplicates."""
    fields: List[str] = []
    for name in group_by or ():
        if name in GROUPABLE_FIELDS and name not in fields:
            fields.append(name)
    return fields


def matches_filter(record: RequestRecord, request_filter: RequestFilter) -> bool:
    f = request_filter

    if f.trace_id and record.trace_id != f.trace_id:
        return False
    if f.provider is not None and record.provider != f.provider:
        return False
    if f.model and record.model != f.model:
        return False
    if f.error_type is not None and record.error_type != f.error_type:
        return False
    if f.start_time is not None and record.requested_at < f.start_time:
        return False
    if f.end_time is not None and record.requested_at > f.end_time:
        return False
    if f.min_tokens is not None and record.total_tokens < f.min_tokens:
        return False
    if f.max_tokens is not None and record.total_tokens > f.max_tokens:
        return False
    if f.has_error is not None and record.has_error != f.has_error:
        return False

    if f.dimensions:
        tags = {(tag.key, tag.value) for tag in record.dimensions}
        for tag in f.dimensions:
            if (tag.key, tag.value) not in tags:
                return False

    return True


def _sort_value(record: RequestRecord, field_name: str):
    value = getattr(record, field_name)
    if hasattr(value, 'value'):
        return value.value
    return value


def order_and_page(records: List[RequestRecord], request_filter: RequestFilter) -> List[RequestRecord]:
    ordered = sorted(
        records,
        key=lambda r: _sort_value(r, request_filter.order_by),
        reverse=request_filter.order_desc
    )
    start = request_filter.offset
    if request_filter.limit > 0:
        return ordered[start:start + request_filter.limit]
    return ordered[start:]


def aggregate_records(records: Sequence[RequestRecord], group_by: Sequence[str]) -> List[AggregateResult]:
    """
    Group records and compute totals.

    With no group fields the result is a single row covering every record,
    matching what an un-grouped SQL aggregate returns.
    """
    fields = normalize_group_by(group_by)
    groups: Dict[Tuple, List[RequestRecord]] = {}

    if not fields:
        groups[()] = list(records)
    else:
        for record in records:
            key = tuple(_sort_value(record, name) for name in fields)
            groups.setdefault(key, []).append(record)

    results = []
    for key in sorted(groups):
        members = groups[key]
        count = len(members)
        total_latency = sum((r.latency for r in members), timedelta(0))
        group_values = {name: getattr(members[0], name) for name in fields}
        results.append(AggregateResult(
            total_requests=count,
            total_tokens=sum(r.total_tokens for r in members),
            avg_latency=total_latency / count if count else timedelta(0),
            error_count=sum(1 for r in members if r.has_error),
            **group_values
        ))

    return results


class InMemoryStorageAdapter:
    """
    Process-local storage backed by a dict.

    Thread-safe for concurrent access. Records are lost when the process exits.
    """

    def __init__(self):
        self._records: Dict[str, RequestRecord] = {}
        self._lock = Lock()

    def save(self, record: RequestRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, record_id: str) -> RequestRecord:
        with self._lock:
            record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Request record not found: {record_id}")
        return record

    def get_by_trace_id(self, trace_id: str) -> List[RequestRecord]:
        return self.query(RequestFilter(trace_id=trace_id))

    def query(self, request_filter: Optional[RequestFilter] = None) -> List[RequestRecord]:
        request_filter = request_filter or RequestFilter()
        with self._lock:
            matched = [r for r in self._records.values() if matches_filter(r, request_filter)]
        return order_and_page(matched, request_filter)

    def aggregate(
        self,
        group_by: Sequence[str],
        request_filter: Optional[RequestFilter] = None
    ) -> List[AggregateResult]:
        request_filter = request_filter or RequestFilter()
        with self._lock:
            matched = [r for r in self._records.values() if matches_filter(r, request_filter)]
        return aggregate_records(matched, group_by)

    def delete(self, record_id: str) -> None:
        with self._lock:
            if record_id not in self._records:
                raise RecordNotFoundError(f"Request record not found: {record_id}")
            del self._records[record_id]

    def delete_older_than(self, before: datetime) -> int:
        cutoff = ensure_utc(before)
        with self._lock:
            expired = [rid for rid, r in self._records.items() if r.requested_at < cutoff]
            for rid in expired:
                del self._records[rid]
        logger.debug(f"Deleted {len(expired)} request records older than {cutoff.isoformat()}")
        return len(expired)

    def close(self) -> None:
        """Nothing to release; records stay readable after close."""
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
