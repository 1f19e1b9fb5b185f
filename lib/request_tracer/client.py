"""
Tracking client that wraps LLM provider calls.

The client times a provider call, reads token usage from the response and
persists a request record through the storage adapter. Tracking never
interferes with the business call: the provider's response or exception is
handed back unchanged, and storage failures are only reported through the
injected TrackerLogger.
"""
import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from lib.request_tracer.circuit_breaker import CircuitBreaker, CircuitState
from lib.request_tracer.context import TrackingContext, get_dimensions, get_trace_id
from lib.request_tracer.errors import CircuitOpenError, TrackerConfigurationError
from lib.request_tracer.logger import NoOpLogger, TrackerLogger
from lib.request_tracer.models import Provider, RequestFilter, TokenStats
from lib.request_tracer.storage import StorageAdapter
from lib.request_tracer.tracker import (
    ErrorLike,
    build_request_record,
    clamp_token_count,
    token_stats_from_records,
)
from lib.request_tracer.usage import extract_usage

logger = logging.getLogger(__name__)

UsageExtractor = Callable[[Any], Tuple[int, int]]

DEFAULT_TRACKING_WORKERS = 4


def with_circuit_breaker(max_failures: int, reset_timeout: Union[float, timedelta]) -> CircuitBreaker:
    """Build a breaker for the client's circuit_breaker option."""
    return CircuitBreaker(max_failures, reset_timeout)


def _coerce_provider(provider: Union[Provider, str]) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise TrackerConfigurationError(f"Unknown provider: {provider}")


class TrackingClient:
    """
    Wraps provider calls and records one request record per call.

    Usage:
        client = TrackingClient(storage, logger=StdlibLogger(), async_tracking=True)
        response = client.trace_call(ctx, Provider.OPENAI, "gpt-4o", sdk.chat.completions.create,
                                     model="gpt-4o", messages=messages)
    """

    def __init__(
        self,
        storage: StorageAdapter,
        *,
        logger: Optional[TrackerLogger] = None,
        async_tracking: bool = False,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_workers: int = DEFAULT_TRACKING_WORKERS
    ):
        """
        Args:
            storage: Where request records are saved
            logger: Receives tracking failures; defaults to NoOpLogger
            async_tracking: Save on a background worker instead of the caller's thread
            circuit_breaker: Optional breaker guarding storage saves
            max_workers: Size of the background save pool in async mode
        """
        if storage is None:
            raise TrackerConfigurationError("storage adapter is required")

        self.storage = storage
        self.logger = logger or NoOpLogger()
        self.async_tracking = async_tracking
        self.circuit_breaker = circuit_breaker

        self._executor: Optional[ThreadPoolExecutor] = None
        if async_tracking:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="request-tracer")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    # -- tracking -----------------------------------------------------------

    def track(
        self,
        ctx: Optional[TrackingContext],
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta,
        error: ErrorLike = None
    ) -> None:
        """
        Record one call. Never raises for storage problems.

        The trace id and dimensions are resolved from ctx here, on the caller's
        thread, so a background save sees the context as it was at dispatch.
        """
        trace_id = get_trace_id(ctx)
        dimensions = get_dimensions(ctx)

        if not self.async_tracking:
            self._save(trace_id, provider, model, input_tokens, output_tokens, duration, error, dimensions)
            return

        try:
            future = self._executor.submit(
                self._save, trace_id, provider, model, input_tokens, output_tokens, duration, error, dimensions
            )
        except RuntimeError as e:
            # Pool already shut down by close()
            self.logger.error(
                "Failed to track request",
                provider=getattr(provider, 'value', provider),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=str(e),
            )
            return

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _save(
        self,
        trace_id: str,
        provider: Union[Provider, str],
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: timedelta,
        error: ErrorLike,
        dimensions: Dict[str, Any]
    ) -> None:
        try:
            record = build_request_record(
                trace_id=trace_id,
                provider=provider,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                latency=duration,
                error=error,
                dimensions=dimensions,
            )
            if self.circuit_breaker is not None:
                self.circuit_breaker.call(lambda: self.storage.save(record))
            else:
                self.storage.save(record)
        except CircuitOpenError as e:
            self.logger.warn(
                "Skipped tracking request, circuit breaker is open",
                provider=getattr(provider, 'value', provider),
                model=model,
                error=str(e),
            )
        except Exception as e:
            self.logger.error(
                "Failed to track request",
                provider=getattr(provider, 'value', provider),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=str(e),
            )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for background saves started so far.

        Returns:
            True if every pending save finished within timeout
        """
        with self._pending_lock:
            futures = list(self._pending)
        if not futures:
            return True

        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # -- wrapping -----------------------------------------------------------

    def _check_call(self, provider: Union[Provider, str], model: str, call: Any) -> Provider:
        if call is None:
            raise TrackerConfigurationError("call is required")
        if not model:
            raise TrackerConfigurationError("model is required")
        return _coerce_provider(provider)

    def trace_call(
        self,
        ctx: Optional[TrackingContext],
        provider: Union[Provider, str],
        model: str,
        call: Callable[..., Any],
        /,
        *args,
        usage_extractor: Optional[UsageExtractor] = None,
        **kwargs
    ) -> Any:
        """
        Invoke call(*args, **kwargs) and track it.

        The response is returned unchanged. An exception raised by call is
        tracked and then re-raised as the same object.
        """
        provider = self._check_call(provider, model, call)

        started = time.perf_counter()
        try:
            response = call(*args, **kwargs)
        except Exception as e:
            elapsed = timedelta(seconds=time.perf_counter() - started)
            self.track(ctx, provider, model, 0, 0, elapsed, e)
            raise
        elapsed = timedelta(seconds=time.perf_counter() - started)

        input_tokens, output_tokens = self._usage(provider, response, usage_extractor)
        self.track(ctx, provider, model, input_tokens, output_tokens, elapsed)
        return response

    async def atrace_call(
        self,
        ctx: Optional[TrackingContext],
        provider: Union[Provider, str],
        model: str,
        call: Callable[..., Awaitable[Any]],
        /,
        *args,
        usage_extractor: Optional[UsageExtractor] = None,
        **kwargs
    ) -> Any:
        """Async variant of trace_call for coroutine functions."""
        provider = self._check_call(provider, model, call)

        started = time.perf_counter()
        try:
            response = await call(*args, **kwargs)
        except Exception as e:
            elapsed = timedelta(seconds=time.perf_counter() - started)
            await self._atrack(ctx, provider, model, 0, 0, elapsed, e)
            raise
        elapsed = timedelta(seconds=time.perf_counter() - started)

        input_tokens, output_tokens = self._usage(provider, response, usage_extractor)
        await self._atrack(ctx, provider, model, input_tokens, output_tokens, elapsed)
        return response

    async def _atrack(self, ctx, provider, model, input_tokens, output_tokens, elapsed, error=None) -> None:
        if self.async_tracking:
            self.track(ctx, provider, model, input_tokens, output_tokens, elapsed, error)
        else:
            await asyncio.to_thread(self.track, ctx, provider, model, input_tokens, output_tokens, elapsed, error)

    def _usage(
        self,
        provider: Provider,
        response: Any,
        usage_extractor: Optional[UsageExtractor]
    ) -> Tuple[int, int]:
        try:
            if usage_extractor is None:
                input_tokens, output_tokens = extract_usage(provider, response)
            else:
                input_tokens, output_tokens = usage_extractor(response)
        except Exception as e:
            self.logger.warn("Failed to read token usage", provider=provider.value, error=str(e))
            return 0, 0
        return clamp_token_count(input_tokens), clamp_token_count(output_tokens)

    def trace_openai_request(self, ctx: Optional[TrackingContext], create: Callable[..., Any], **request) -> Any:
        """Trace an OpenAI chat completion; the model is taken from request['model']."""
        return self.trace_call(ctx, Provider.OPENAI, request.get('model', ''), create, **request)

    def trace_anthropic_request(self, ctx: Optional[TrackingContext], create: Callable[..., Any], **params) -> Any:
        return self.trace_call(ctx, Provider.ANTHROPIC, str(params.get('model', '')), create, **params)

    def trace_mistral_request(
        self,
        ctx: Optional[TrackingContext],
        chat: Callable[..., Any],
        model: str,
        messages: Any,
        **params
    ) -> Any:
        return self.trace_call(ctx, Provider.MISTRAL, model, chat, model, messages, **params)

    def trace_google_request(
        self,
        ctx: Optional[TrackingContext],
        generate_content: Callable[..., Any],
        model: str,
        *parts
    ) -> Any:
        return self.trace_call(ctx, Provider.GOOGLE, model, generate_content, *parts)

    # -- reporting ----------------------------------------------------------

    def get_token_stats(self, since: Optional[datetime] = None) -> Dict[str, TokenStats]:
        """Token usage per "provider/model" since the given time. Storage errors propagate."""
        records = self.storage.query(RequestFilter(start_time=since))
        return token_stats_from_records(records)

    def circuit_state(self) -> Optional[CircuitState]:
        if self.circuit_breaker is None:
            return None
        return self.circuit_breaker.get_state()

    def close(self) -> None:
        """Wait for background saves, stop the save pool, then close the storage adapter."""
        if not self.flush(timeout=5.0):
            logger.warning("Closing tracking client with background saves still running")
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        self.storage.close()

    def __enter__(self) -> "TrackingClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
