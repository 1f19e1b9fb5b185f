from .models import (
    Provider,
    ErrorType,
    DimensionTag,
    RequestRecord,
    RequestFilter,
    AggregateResult,
    TokenStats,
    UsageStats,
)
from .errors import TrackerError, TrackerConfigurationError, CircuitOpenError, RecordNotFoundError
from .error_classifier import categorize_error
from .circuit_breaker import CircuitBreaker, CircuitState
from .context import TrackingContext, get_trace_id, get_user_id, get_dimensions
from .logger import TrackerLogger, NoOpLogger, StdlibLogger
from .storage import StorageAdapter, InMemoryStorageAdapter
from .usage import extract_usage
from .tracker import Tracker, TrackedRequest, RequestOptions
from .simple_tracker import TokenTracker, SimpleTracker, quick_track
from .client import TrackingClient, with_circuit_breaker
from .config import TrackerConfig, load_tracker_config, create_client

__all__ = [
    'Provider', 'ErrorType', 'DimensionTag', 'RequestRecord', 'RequestFilter',
    'AggregateResult', 'TokenStats', 'UsageStats',
    'TrackerError', 'TrackerConfigurationError', 'CircuitOpenError', 'RecordNotFoundError',
    'categorize_error', 'CircuitBreaker', 'CircuitState',
    'TrackingContext', 'get_trace_id', 'get_user_id', 'get_dimensions',
    'TrackerLogger', 'NoOpLogger', 'StdlibLogger',
    'StorageAdapter', 'InMemoryStorageAdapter', 'extract_usage',
    'Tracker', 'TrackedRequest', 'RequestOptions',
    'TokenTracker', 'SimpleTracker', 'quick_track',
    'TrackingClient', 'with_circuit_breaker',
    'TrackerConfig', 'load_tracker_config', 'create_client',
]
