"""
Simplified recording APIs for callers that time provider calls themselves.

Unlike TrackingClient these facades do not wrap a business call, so storage
errors propagate to the caller.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from lib.request_tracer.context import TrackingContext, get_dimensions, get_trace_id
from lib.request_tracer.models import Provider, RequestFilter, RequestRecord, TokenStats, UsageStats
from lib.request_tracer.storage import StorageAdapter
from lib.request_tracer.tracker import ErrorLike, RequestOptions, Tracker, token_stats_from_records

logger = logging.getLogger(__name__)


class TokenTracker:
    """Token counting without timing or dimensions unless a context is given."""

    def __init__(self, storage: StorageAdapter):
        self.tracker = Tracker(storage)

    def track(self, provider: Union[Provider, str], model: str, input_tokens: int, output_tokens: int) -> RequestRecord:
        return self.track_with_context(None, provider, model, input_tokens, output_tokens)

    def track_with_context(
        self,
        ctx: Optional[TrackingContext],
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta = timedelta(0),
        error: ErrorLike = None
    ) -> RequestRecord:
        options = RequestOptions(
            provider=provider,
            model=model,
            trace_id=get_trace_id(ctx),
            dimensions=get_dimensions(ctx),
        )
        return self.tracker.track_request(options, input_tokens, output_tokens, duration, error=error)

    def get_token_stats(self, since: Optional[datetime] = None) -> Dict[str, TokenStats]:
        records = self.tracker.query_requests(RequestFilter(start_time=since))
        return token_stats_from_records(records)


def quick_track(
    tracker: TokenTracker,
    provider: Union[Provider, str],
    model: str,
    input_tokens: int,
    output_tokens: int
) -> Optional[RequestRecord]:
    """One-line tracking for scripts. Failures are logged and None is returned."""
    try:
        return tracker.track(provider, model, input_tokens, output_tokens)
    except Exception as e:
        logger.error(f"Quick tracking failed for {getattr(provider, 'value', provider)}/{model}: {e}")
        return None


class SimpleTracker:
    """
    Convenience methods for recording calls with optional dimensions.

    Usage:
        tracker = SimpleTracker(InMemoryStorageAdapter())
        tracker.track_openai("gpt-4o", 120, 40, timedelta(milliseconds=850))
        stats = tracker.get_usage_stats(Provider.OPENAI)
    """

    def __init__(self, storage: StorageAdapter):
        self._tracker = Tracker(storage)

    @property
    def tracker(self) -> Tracker:
        """The underlying Tracker, for queries and maintenance."""
        return self._tracker

    def track_call(
        self,
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta,
        error: ErrorLike = None
    ) -> RequestRecord:
        return self.track_call_with_context(None, provider, model, input_tokens, output_tokens, duration, error)

    def track_call_with_context(
        self,
        ctx: Optional[TrackingContext],
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta,
        error: ErrorLike = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RequestRecord:
        """Record a call; metadata becomes the record's dimensions."""
        options = RequestOptions(
            provider=provider,
            model=model,
            trace_id=get_trace_id(ctx),
            dimensions=dict(metadata or {}),
        )
        return self._tracker.track_request(options, input_tokens, output_tokens, duration, error=error)

    def track_openai(self, model: str, input_tokens: int, output_tokens: int,
                     duration: timedelta, error: ErrorLike = None) -> RequestRecord:
        return self.track_call(Provider.OPENAI, model, input_tokens, output_tokens, duration, error)

    def track_anthropic(self, model: str, input_tokens: int, output_tokens: int,
                        duration: timedelta, error: ErrorLike = None) -> RequestRecord:
        return self.track_call(Provider.ANTHROPIC, model, input_tokens, output_tokens, duration, error)

    def track_with_dimensions(
        self,
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta,
        dimensions: Dict[str, Any],
        error: ErrorLike = None
    ) -> RequestRecord:
        return self.track_call_with_context(
            None, provider, model, input_tokens, output_tokens, duration, error, dimensions
        )

    def get_usage_stats(
        self,
        provider: Optional[Union[Provider, str]] = None,
        since: Optional[datetime] = None
    ) -> UsageStats:
        """
        Summarise usage across provider/model groups.

        max_latency is the largest per-group average latency and error_rate
        is a percentage of total requests.
        """
        request_filter = RequestFilter(provider=provider, start_time=since)
        aggregates = self._tracker.get_aggregates(['provider', 'model'], request_filter)

        stats = UsageStats()
        for agg in aggregates:
            stats.total_requests += agg.total_requests
            stats.total_tokens += agg.total_tokens
            stats.error_count += agg.error_count
            if agg.avg_latency > stats.max_latency:
                stats.max_latency = agg.avg_latency

        if stats.total_requests > 0:
            stats.error_rate = stats.error_count / stats.total_requests * 100

        return stats

    def close(self) -> None:
        self._tracker.close()
