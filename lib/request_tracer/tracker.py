"""
Low-level request tracking on top of a storage adapter.

build_request_record() is the single place where request records are
assembled; both Tracker and TrackingClient go through it. Tracker methods
propagate storage errors to their caller.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from lib.request_tracer.error_classifier import categorize_error, error_message
from lib.request_tracer.models import (
    AggregateResult,
    DimensionTag,
    Provider,
    RequestFilter,
    RequestRecord,
    TokenStats,
    utc_now,
)
from lib.request_tracer.context import new_trace_id
from lib.request_tracer.storage import StorageAdapter

STATUS_OK = 200
STATUS_ERROR = 500

ErrorLike = Optional[Union[BaseException, str]]


def dimensions_to_tags(dimensions: Optional[Mapping[str, Any]]) -> tuple:
    """Convert a dimension mapping to ordered tags, dropping trace ids and empty keys."""
    tags = []
    for key, value in (dimensions or {}).items():
        if not key or key == 'trace_id' or value is None:
            continue
        tags.append(DimensionTag(key=key, value=value))
    return tuple(tags)


def clamp_token_count(value: Any) -> int:
    """Token count as a non-negative int; values that do not convert count as zero."""
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def build_request_record(
    trace_id: str,
    provider: Union[Provider, str],
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency: timedelta,
    error: ErrorLike = None,
    dimensions: Optional[Mapping[str, Any]] = None,
    status_code: Optional[int] = None
) -> RequestRecord:
    """
    Assemble an immutable request record.

    Negative or unusable token counts become zero and a missing trace id is
    replaced with a new one. The status code defaults to 500 when the error
    has a message and 200 otherwise.
    """
    input_tokens = clamp_token_count(input_tokens)
    output_tokens = clamp_token_count(output_tokens)
    if latency is None or latency < timedelta(0):
        latency = timedelta(0)

    message = error_message(error)
    if status_code is None:
        status_code = STATUS_ERROR if message else STATUS_OK

    responded_at = utc_now()
    return RequestRecord(
        id=str(uuid.uuid4()),
        trace_id=trace_id or new_trace_id(),
        provider=provider,
        model=model or "",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        latency=latency,
        status_code=status_code,
        error=message,
        error_type=categorize_error(message),
        dimensions=dimensions_to_tags(dimensions),
        requested_at=responded_at - latency,
        responded_at=responded_at,
    )


def token_stats_from_records(records: Sequence[RequestRecord]) -> Dict[str, TokenStats]:
    """Sum token usage per "provider/model" key."""
    stats: Dict[str, TokenStats] = {}
    for record in records:
        key = f"{record.provider.value}/{record.model}"
        if key not in stats:
            stats[key] = TokenStats(provider=record.provider, model=record.model)

        s = stats[key]
        s.total_requests += 1
        s.input_tokens += record.input_tokens
        s.output_tokens += record.output_tokens
        s.total_tokens += record.total_tokens
        if record.has_error:
            s.error_count += 1

    return stats


@dataclass
class RequestOptions:
    provider: Union[Provider, str]
    model: str
    trace_id: str = ""
    dimensions: Dict[str, Any] = field(default_factory=dict)


class Tracker:
    """Records request records and exposes the storage read/maintenance operations."""

    def __init__(self, storage: StorageAdapter):
        self.storage = storage

    def track_request(
        self,
        options: RequestOptions,
        input_tokens: int,
        output_tokens: int,
        latency: timedelta,
        status_code: Optional[int] = None,
        error: ErrorLike = None
    ) -> RequestRecord:
        record = build_request_record(
            trace_id=options.trace_id,
            provider=options.provider,
            model=options.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency=latency,
            error=error,
            dimensions=options.dimensions,
            status_code=status_code,
        )
        self.storage.save(record)
        return record

    def get_request(self, record_id: str) -> RequestRecord:
        return self.storage.get(record_id)

    def get_requests_by_trace(self, trace_id: str) -> List[RequestRecord]:
        return self.storage.get_by_trace_id(trace_id)

    def query_requests(self, request_filter: Optional[RequestFilter] = None) -> List[RequestRecord]:
        return self.storage.query(request_filter or RequestFilter())

    def get_aggregates(
        self,
        group_by: Sequence[str],
        request_filter: Optional[RequestFilter] = None
    ) -> List[AggregateResult]:
        return self.storage.aggregate(group_by, request_filter)

    def get_token_stats(self, since: Optional[datetime] = None) -> Dict[str, TokenStats]:
        records = self.storage.query(RequestFilter(start_time=since))
        return token_stats_from_records(records)

    def delete_request(self, record_id: str) -> None:
        self.storage.delete(record_id)

    def cleanup_old_requests(self, before: datetime) -> int:
        return self.storage.delete_older_than(before)

    def close(self) -> None:
        self.storage.close()

    def start_request(self, trace_id: str, provider: Union[Provider, str], model: str) -> "TrackedRequest":
        """Start timing a call; finish() on the result records it."""
        return TrackedRequest(self, trace_id, provider, model)


class TrackedRequest:
    """An in-flight call whose latency is measured from creation to finish()."""

    def __init__(self, tracker: Tracker, trace_id: str, provider: Union[Provider, str], model: str):
        self.tracker = tracker
        self.trace_id = trace_id
        self.provider = provider
        self.model = model
        self._started = time.perf_counter()

    def elapsed(self) -> timedelta:
        return timedelta(seconds=time.perf_counter() - self._started)

    def finish(
        self,
        input_tokens: int,
        output_tokens: int,
        error: ErrorLike = None,
        status_code: Optional[int] = None
    ) -> RequestRecord:
        return self.finish_with_dimensions(input_tokens, output_tokens, None, error, status_code)

    def finish_with_dimensions(
        self,
        input_tokens: int,
        output_tokens: int,
        dimensions: Optional[Dict[str, Any]],
        error: ErrorLike = None,
        status_code: Optional[int] = None
    ) -> RequestRecord:
        options = RequestOptions(
            provider=self.provider,
            model=self.model,
            trace_id=self.trace_id,
            dimensions=dict(dimensions or {}),
        )
        return self.tracker.track_request(
            options, input_tokens, output_tokens, self.elapsed(), status_code, error
        )
