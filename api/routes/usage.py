"""
Usage reporting API over tracked LLM requests
Uses POST for query endpoints so filters travel in the request body
"""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ValidationError

from api.dependencies import get_tracker
from api.services.usage_service import UsageService
from lib.request_tracer.errors import RecordNotFoundError
from lib.request_tracer.models import DimensionTag, ErrorType, Provider, RequestFilter
from lib.request_tracer.tracker import Tracker

router = APIRouter()


# Request models for POST endpoints
class RequestQuery(BaseModel):
    trace_id: Optional[str] = Field(default=None, description="Only requests in this trace")
    provider: Optional[Provider] = Field(default=None, description="Filter by provider")
    model: Optional[str] = Field(default=None, description="Filter by model name")
    error_type: Optional[ErrorType] = Field(default=None, description="Filter by error category")
    start_time: Optional[str] = Field(default=None, description="Start time (ISO 8601)")
    end_time: Optional[str] = Field(default=None, description="End time (ISO 8601)")
    dimensions: Dict[str, str] = Field(default_factory=dict, description="Required dimension tags")
    min_tokens: Optional[int] = None
    max_tokens: Optional[int] = None
    has_error: Optional[bool] = None
    limit: int = Field(default=100, ge=0, description="0 means no limit")
    offset: int = Field(default=0, ge=0)
    order_by: str = Field(default="requested_at")
    order_desc: bool = False


class AggregateQuery(RequestQuery):
    group_by: List[str] = Field(default_factory=lambda: ["provider", "model"], description="provider and/or model")


class TokenStatsQuery(BaseModel):
    since: Optional[str] = Field(default=None, description="Start time (ISO 8601)")


class CleanupRequest(BaseModel):
    older_than_days: int = Field(..., ge=1, description="Delete requests older than this many days")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def build_filter(query: RequestQuery) -> RequestFilter:
    """Raises ValueError for bad timestamps or ordering."""
    return RequestFilter(
        trace_id=query.trace_id,
        provider=query.provider,
        model=query.model,
        error_type=query.error_type,
        start_time=parse_timestamp(query.start_time),
        end_time=parse_timestamp(query.end_time),
        dimensions=[DimensionTag(key=k, value=v) for k, v in query.dimensions.items()],
        min_tokens=query.min_tokens,
        max_tokens=query.max_tokens,
        has_error=query.has_error,
        limit=query.limit,
        offset=query.offset,
        order_by=query.order_by,
        order_desc=query.order_desc,
    )


@router.post("/requests")
def list_requests(
    query: RequestQuery,
    tracker: Tracker = Depends(get_tracker)
):
    """
    List tracked requests matching the filter, ordered and paged.
    """
    try:
        request_filter = build_filter(query)
    except ValidationError as e:
        return {"error": f"Invalid filter: {e.errors()[0]['msg']}"}
    except ValueError:
        return {"error": "Invalid date format. Use ISO 8601"}

    service = UsageService(tracker)
    return service.list_requests(request_filter)


@router.get("/requests/{request_id}")
def get_request(request_id: str, tracker: Tracker = Depends(get_tracker)):
    try:
        return UsageService(tracker).get_request(request_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")


@router.delete("/requests/{request_id}")
def delete_request(request_id: str, tracker: Tracker = Depends(get_tracker)):
    try:
        tracker.delete_request(request_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    return {"deleted": request_id}


@router.get("/traces/{trace_id}")
def get_trace(trace_id: str, tracker: Tracker = Depends(get_tracker)):
    """
    Get every request recorded under one trace id.
    """
    return UsageService(tracker).get_trace(trace_id)


@router.post("/aggregates")
def get_aggregates(
    query: AggregateQuery,
    tracker: Tracker = Depends(get_tracker)
):
    """
    Totals grouped by provider and/or model.

    Returns request counts, token totals, average latency and error counts.
    """
    try:
        request_filter = build_filter(query)
    except ValidationError as e:
        return {"error": f"Invalid filter: {e.errors()[0]['msg']}"}
    except ValueError:
        return {"error": "Invalid date format. Use ISO 8601"}

    service = UsageService(tracker)
    return service.get_aggregates(query.group_by, request_filter)


@router.post("/token-stats")
def get_token_stats(
    query: TokenStatsQuery,
    tracker: Tracker = Depends(get_tracker)
):
    try:
        since = parse_timestamp(query.since)
    except ValueError:
        return {"error": "Invalid date format. Use ISO 8601"}

    return UsageService(tracker).get_token_stats(since)


@router.post("/cleanup")
def cleanup_requests(
    request: CleanupRequest,
    tracker: Tracker = Depends(get_tracker)
):
    """
    Delete requests older than the given number of days.
    """
    return UsageService(tracker).cleanup(request.older_than_days)
