from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """LLM vendors whose calls can be tracked."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"


class ErrorType(str, Enum):
    """Coarse category of a failed provider call."""
    NONE = "none"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


# Column sizes of the dimension_tags table
MAX_DIMENSION_KEY_LENGTH = 100
MAX_DIMENSION_VALUE_LENGTH = 255

ORDERABLE_FIELDS = {
    'requested_at',
    'responded_at',
    'latency',
    'total_tokens',
    'input_tokens',
    'output_tokens',
    'model',
    'provider',
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DimensionTag(BaseModel):
    """A key/value tag attached to a tracked request."""
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1, description="Dimension name")
    value: str = Field(..., description="Dimension value")

    @field_validator('key', mode='before')
    @classmethod
    def truncate_key(cls, v):
        return str(v)[:MAX_DIMENSION_KEY_LENGTH]

    @field_validator('value', mode='before')
    @classmethod
    def stringify_value(cls, v):
        v = v if isinstance(v, str) else str(v)
        return v[:MAX_DIMENSION_VALUE_LENGTH]


class RequestRecord(BaseModel):
    """One tracked LLM call. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique record identifier")
    trace_id: str = Field(..., description="Correlation id grouping related calls")
    provider: Provider
    model: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    latency: timedelta = Field(default=timedelta(0))
    status_code: int = 200
    error: str = ""
    error_type: ErrorType = ErrorType.NONE
    dimensions: Tuple[DimensionTag, ...] = ()
    requested_at: datetime
    responded_at: datetime

    @field_validator('input_tokens', 'output_tokens', 'total_tokens', mode='before')
    @classmethod
    def clamp_tokens(cls, v):
        if v is None:
            return 0
        return max(int(v), 0)

    @field_validator('requested_at', 'responded_at')
    @classmethod
    def normalize_timestamps(cls, v):
        return ensure_utc(v)

    @property
    def latency_ms(self) -> float:
        return self.latency.total_seconds() * 1000

    @property
    def has_error(self) -> bool:
        return bool(self.error)

    def dimension_map(self) -> Dict[str, str]:
        return {tag.key: tag.value for tag in self.dimensions}

    def to_payload(self) -> Dict[str, Any]:
        """JSON-friendly representation used by the reporting API."""
        payload = self.model_dump(mode='json', exclude={'latency', 'dimensions'})
        payload['latency_ms'] = round(self.latency_ms, 3)
        payload['dimensions'] = self.dimension_map()
        return payload


class RequestFilter(BaseModel):
    """Criteria for querying stored request records."""
    trace_id: Optional[str] = None
    provider: Optional[Provider] = None
    model: Optional[str] = None
    error_type: Optional[ErrorType] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    dimensions: List[DimensionTag] = Field(default_factory=list)
    min_tokens: Optional[int] = None
    max_tokens: Optional[int] = None
    has_error: Optional[bool] = None
    limit: int = Field(default=0, ge=0, description="0 means no limit")
    offset: int = Field(default=0, ge=0)
    order_by: str = Field(default='requested_at')
    order_desc: bool = False

    @field_validator('order_by')
    @classmethod
    def validate_order_by(cls, v):
        if v not in ORDERABLE_FIELDS:
            raise ValueError(f"order_by must be one of: {', '.join(sorted(ORDERABLE_FIELDS))}")
        return v

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_bounds(cls, v):
        return ensure_utc(v) if v is not None else None


class AggregateResult(BaseModel):
    """Per-group totals. provider/model are set only when grouped by."""
    provider: Optional[Provider] = None
    model: Optional[str] = None
    total_requests: int = 0
    total_tokens: int = 0
    avg_latency: timedelta = Field(default=timedelta(0))
    error_count: int = 0


class TokenStats(BaseModel):
    """Token usage for one provider/model pair."""
    provider: Provider
    model: str
    total_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    error_count: int = 0


class UsageStats(BaseModel):
    total_requests: int = 0
    total_tokens: int = 0
    error_count: int = 0
    error_rate: float = Field(default=0.0, description="Percentage of requests that failed")
    max_latency: timedelta = Field(default=timedelta(0))
