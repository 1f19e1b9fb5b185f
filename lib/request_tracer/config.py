"""
Tracker Configuration Loader

Loads tracer settings from a YAML file, then applies LLM_TRACER_* environment
overrides. A missing or unreadable file falls back to defaults.

Example config/tracer.yaml:

    database_url: postgresql://tracer:secret@db/tracer
    async_tracking: true
    retention_days: 30
    log_level: INFO
    circuit_breaker:
      enabled: true
      max_failures: 5
      reset_timeout: 30
"""
import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from lib.request_tracer.circuit_breaker import CircuitBreaker
from lib.request_tracer.client import TrackingClient
from lib.request_tracer.errors import TrackerConfigurationError
from lib.request_tracer.logger import StdlibLogger, TrackerLogger
from lib.request_tracer.storage import StorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/tracer.yaml'

TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off', ''}

VALID_LOG_LEVELS = {'CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'}

# environment variable -> config field
ENV_OVERRIDES = {
    'LLM_TRACER_DATABASE_URL': 'database_url',
    'LLM_TRACER_ASYNC_TRACKING': 'async_tracking',
    'LLM_TRACER_CIRCUIT_BREAKER': 'circuit_breaker_enabled',
    'LLM_TRACER_CB_MAX_FAILURES': 'circuit_breaker_max_failures',
    'LLM_TRACER_CB_RESET_TIMEOUT': 'circuit_breaker_reset_timeout',
    'LLM_TRACER_RETENTION_DAYS': 'retention_days',
    'LLM_TRACER_LOG_LEVEL': 'log_level',
}

BOOL_FIELDS = {'async_tracking', 'circuit_breaker_enabled'}


class TrackerConfig(BaseModel):
    """Settings for the tracking client, storage and retention job."""
    database_url: str = Field(default='sqlite:///llm_requests.db')
    async_tracking: bool = False
    circuit_breaker_enabled: bool = False
    circuit_breaker_max_failures: int = Field(default=5, ge=1)
    circuit_breaker_reset_timeout: float = Field(default=30.0, gt=0, description="Seconds")
    retention_days: int = Field(default=90, ge=1)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}")
        return level


def parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise TrackerConfigurationError(f"{name} must be a boolean, got '{value}'")


def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning(f"Tracker configuration file not found: {config_path}, using defaults")
        return {}

    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML configuration: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"Tracker configuration must be a mapping: {config_path}")
        return {}

    logger.info(f"Loaded tracker configuration from {config_path}")
    return data


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    """Move the nested circuit_breaker block onto the flat field names."""
    values = {k: v for k, v in data.items() if k != 'circuit_breaker'}
    breaker = data.get('circuit_breaker')
    if isinstance(breaker, dict):
        for key in ('enabled', 'max_failures', 'reset_timeout'):
            if key in breaker:
                values[f'circuit_breaker_{key}'] = breaker[key]
    elif breaker is not None:
        values['circuit_breaker_enabled'] = breaker
    return values


def load_tracker_config(config_path: Optional[str] = None) -> TrackerConfig:
    """
    Build a TrackerConfig from YAML and the environment.

    Args:
        config_path: YAML file; defaults to $LLM_TRACER_CONFIG_PATH or config/tracer.yaml

    Raises:
        TrackerConfigurationError: A value is present but invalid
    """
    config_path = config_path or os.getenv('LLM_TRACER_CONFIG_PATH', DEFAULT_CONFIG_PATH)
    values = _flatten(_read_yaml(config_path))

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        values[field_name] = parse_bool(env_name, raw) if field_name in BOOL_FIELDS else raw

    for field_name in BOOL_FIELDS:
        if field_name in values:
            values[field_name] = parse_bool(field_name, values[field_name])

    try:
        return TrackerConfig(**values)
    except ValidationError as e:
        raise TrackerConfigurationError(f"Invalid tracker configuration: {e}")


def create_client(
    storage: StorageAdapter,
    config: Optional[TrackerConfig] = None,
    tracker_logger: Optional[TrackerLogger] = None
) -> TrackingClient:
    """Build a TrackingClient honouring the async and circuit breaker settings."""
    config = config or TrackerConfig()

    breaker = None
    if config.circuit_breaker_enabled:
        breaker = CircuitBreaker(
            config.circuit_breaker_max_failures,
            config.circuit_breaker_reset_timeout
        )

    return TrackingClient(
        storage,
        logger=tracker_logger or StdlibLogger(),
        async_tracking=config.async_tracking,
        circuit_breaker=breaker,
    )
