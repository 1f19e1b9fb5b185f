"""
Reporting over tracked LLM requests.
Formats tracker results as JSON-ready dictionaries for the usage API.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from lib.request_tracer.models import AggregateResult, RequestFilter, utc_now
from lib.request_tracer.tracker import Tracker


def format_aggregate(agg: AggregateResult) -> Dict[str, Any]:
    data = {
        "total_requests": agg.total_requests,
        "total_tokens": agg.total_tokens,
        "avg_latency_ms": round(agg.avg_latency.total_seconds() * 1000, 3),
        "error_count": agg.error_count,
    }
    if agg.provider is not None:
        data["provider"] = agg.provider.value
    if agg.model is not None:
        data["model"] = agg.model
    return data


class UsageService:
    def __init__(self, tracker: Tracker):
        self.tracker = tracker

    def list_requests(self, request_filter: RequestFilter) -> Dict[str, Any]:
        """
        Get request records matching a filter.

        Args:
            request_filter: Filter, ordering and paging options

        Returns:
            Dictionary with the matching records and their count
        """
        records = self.tracker.query_requests(request_filter)
        data = [record.to_payload() for record in records]
        return {
            "data": data,
            "total_records": len(data)
        }

    def get_request(self, record_id: str) -> Dict[str, Any]:
        return self.tracker.get_request(record_id).to_payload()

    def get_trace(self, trace_id: str) -> Dict[str, Any]:
        records = self.tracker.get_requests_by_trace(trace_id)
        total_tokens = sum(r.total_tokens for r in records)
        return {
            "trace_id": trace_id,
            "data": [record.to_payload() for record in records],
            "total_records": len(records),
            "total_tokens": total_tokens
        }

    def get_aggregates(self, group_by: Sequence[str], request_filter: RequestFilter) -> Dict[str, Any]:
        """
        Get totals grouped by provider and/or model.

        Args:
            group_by: Any of "provider", "model"; other names are ignored
            request_filter: Which records to include

        Returns:
            Dictionary with one entry per group
        """
        aggregates = self.tracker.get_aggregates(group_by, request_filter)
        data: List[Dict[str, Any]] = [format_aggregate(agg) for agg in aggregates]
        return {
            "group_by": list(group_by),
            "data": data
        }

    def get_token_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        stats = self.tracker.get_token_stats(since)
        return {
            "since": since.isoformat() if since else None,
            "data": {key: s.model_dump(mode='json') for key, s in sorted(stats.items())}
        }

    def cleanup(self, older_than_days: int) -> Dict[str, Any]:
        """Delete records requested more than older_than_days ago."""
        cutoff = utc_now() - timedelta(days=older_than_days)
        deleted = self.tracker.cleanup_old_requests(cutoff)
        return {
            "deleted": deleted,
            "cutoff": cutoff.isoformat()
        }
