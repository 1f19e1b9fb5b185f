import unittest
from unittest.mock import Mock, patch, MagicMock
import asyncio
import os
import runpy
import tempfile
import threading
import time
from datetime import timedelta
from types import SimpleNamespace

from fastapi.testclient import TestClient
from sqlalchemy import func, inspect, select

from lib.request_tracer import (
    Provider, ErrorType, DimensionTag, RequestFilter,
    TrackerConfigurationError, CircuitOpenError, RecordNotFoundError,
    categorize_error, CircuitBreaker, CircuitState,
    TrackingContext, get_trace_id, get_user_id, get_dimensions,
    NoOpLogger, StdlibLogger, InMemoryStorageAdapter, extract_usage,
    Tracker, RequestOptions, TokenTracker, SimpleTracker, quick_track,
    TrackingClient, with_circuit_breaker,
    TrackerConfig, load_tracker_config, create_client,
)
from lib.request_tracer.models import utc_now
from lib.request_tracer.tracker import build_request_record

from api.dependencies import get_tracker
from api.jobs.retention import purge_expired_requests
from api.jobs.scheduler import setup_retention_job, run_retention_job
from api.main import app
from api.models.database import init_database
from api.models.request_tracking import DimensionTagRow, RequestLog, request_dimensions
from api.services.request_storage import SQLAlchemyStorageAdapter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def failing_operation():
    raise RuntimeError("storage unavailable")


def make_record(provider=Provider.OPENAI, model="gpt-4o", input_tokens=10, output_tokens=5,
                latency_ms=100, error=None, dimensions=None, trace_id="trace-1", age=None):
    record = build_request_record(
        trace_id=trace_id,
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency=timedelta(milliseconds=latency_ms),
        error=error,
        dimensions=dimensions,
    )
    if age is not None:
        requested_at = utc_now() - age
        record = record.model_copy(update={
            'requested_at': requested_at,
            'responded_at': requested_at + record.latency,
        })
    return record


class SlowStorage(InMemoryStorageAdapter):
    def __init__(self, delay=0.05):
        super().__init__()
        self.delay = delay

    def save(self, record):
        time.sleep(self.delay)
        super().save(record)


class TestCircuitBreaker(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(max_failures=3, reset_timeout=30, clock=self.clock)

    def fail(self, times=1):
        for _ in range(times):
            with self.assertRaises(RuntimeError):
                self.breaker.call(failing_operation)

    def test_starts_closed(self):
        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)
        self.assertFalse(self.breaker.is_open())

    def test_opens_at_threshold(self):
        self.fail(2)
        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)
        self.fail(1)
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)
        self.assertTrue(self.breaker.is_open())

    def test_fail_fast_while_open(self):
        self.fail(3)
        invoked = []

        with self.assertRaises(CircuitOpenError):
            self.breaker.call(lambda: invoked.append(True))

        self.assertEqual(invoked, [])

    def test_half_open_after_reset_timeout(self):
        self.fail(3)
        self.clock.now += 30
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)

        self.clock.now += 1
        self.assertEqual(self.breaker.get_state(), CircuitState.HALF_OPEN)

        invoked = []
        self.breaker.call(lambda: invoked.append(True))
        self.assertEqual(invoked, [True])

    def test_half_open_recovery(self):
        self.fail(3)
        self.clock.now += 31

        self.assertEqual(self.breaker.call(lambda: "ok"), "ok")
        self.assertEqual(self.breaker.get_state(), CircuitState.HALF_OPEN)
        self.breaker.call(lambda: "ok")

        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)
        self.assertEqual(self.breaker.failure_count, 0)

    def test_half_open_relapse(self):
        self.fail(3)
        self.clock.now += 31
        self.assertEqual(self.breaker.get_state(), CircuitState.HALF_OPEN)

        self.fail(1)
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)

        # Relapse restarts the timeout from the new failure
        self.clock.now += 20
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)

    def test_success_resets_failures_when_closed(self):
        self.fail(2)
        self.breaker.call(lambda: None)
        self.fail(2)
        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)

        self.fail(1)
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)

    def test_returns_operation_result(self):
        self.assertEqual(self.breaker.call(lambda: 42), 42)

    def test_reraises_operation_exception(self):
        error = ValueError("boom")

        def operation():
            raise error

        with self.assertRaises(ValueError) as cm:
            self.breaker.call(operation)
        self.assertIs(cm.exception, error)

    def test_snapshot(self):
        self.fail(1)
        snapshot = self.breaker.snapshot().to_dict()
        self.assertEqual(snapshot['state'], 'closed')
        self.assertEqual(snapshot['failure_count'], 1)
        self.assertEqual(snapshot['last_failure_time'], 1000.0)

    def test_accepts_timedelta_timeout(self):
        breaker = CircuitBreaker(1, timedelta(seconds=5), clock=self.clock)
        self.assertEqual(breaker.reset_timeout, 5.0)

    def test_rejects_invalid_settings(self):
        with self.assertRaises(TrackerConfigurationError):
            CircuitBreaker(0, 30)
        with self.assertRaises(TrackerConfigurationError):
            CircuitBreaker(1, -1)

    def test_concurrent_calls(self):
        breaker = CircuitBreaker(max_failures=1000, reset_timeout=30)
        errors = []

        def worker(i):
            try:
                if i % 2:
                    breaker.call(failing_operation)
                else:
                    breaker.call(lambda: i)
            except RuntimeError:
                pass
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(100)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        self.assertFalse(any(t.is_alive() for t in threads))
        self.assertEqual(errors, [])
        self.assertEqual(breaker.get_state(), CircuitState.CLOSED)
        self.assertGreaterEqual(breaker.failure_count, 0)
        self.assertLess(breaker.failure_count, 1000)


class TestErrorClassifier(unittest.TestCase):

    def test_none(self):
        self.assertEqual(categorize_error(None), ErrorType.NONE)
        self.assertEqual(categorize_error(""), ErrorType.NONE)

    def test_tie_breaks(self):
        self.assertEqual(categorize_error("dial tcp: connection timeout"), ErrorType.NETWORK)
        self.assertEqual(categorize_error("504 Gateway Timeout"), ErrorType.SERVER_ERROR)
        self.assertEqual(categorize_error("RATE LIMIT EXCEEDED"), ErrorType.RATE_LIMIT)
        self.assertEqual(categorize_error("something odd happened"), ErrorType.UNKNOWN)

    def test_categories(self):
        self.assertEqual(categorize_error("HTTP 429"), ErrorType.RATE_LIMIT)
        self.assertEqual(categorize_error("Invalid API key"), ErrorType.AUTHENTICATION)
        self.assertEqual(categorize_error("no such host"), ErrorType.NETWORK)
        self.assertEqual(categorize_error("context deadline exceeded"), ErrorType.TIMEOUT)
        self.assertEqual(categorize_error("400 Bad Request"), ErrorType.INVALID_REQUEST)
        self.assertEqual(categorize_error("503 Service Unavailable"), ErrorType.SERVER_ERROR)

    def test_exceptions(self):
        self.assertEqual(categorize_error(ConnectionError("connection reset")), ErrorType.NETWORK)
        # An empty message falls back to the class name
        self.assertEqual(categorize_error(TimeoutError()), ErrorType.TIMEOUT)


class TestTrackingContext(unittest.TestCase):

    def test_layering_keeps_earlier_values(self):
        base = TrackingContext().with_trace_id("t-1")
        ctx = base.with_user_id("u1").with_workflow("ingest").with_feature("summary")

        self.assertEqual(ctx.trace_id, "t-1")
        self.assertEqual(ctx.user_id, "u1")
        self.assertEqual(base.user_id, "")

    def test_with_dimensions_merges_by_key(self):
        ctx = TrackingContext().with_dimensions({"team": "a", "tier": "free"})
        ctx = ctx.with_dimensions({"team": "b"})
        self.assertEqual(dict(ctx.dimensions), {"team": "b", "tier": "free"})

    def test_dimensions_are_copied(self):
        source = {"team": "a"}
        ctx = TrackingContext(dimensions=source)
        source["team"] = "changed"
        self.assertEqual(ctx.dimensions["team"], "a")
        with self.assertRaises(TypeError):
            ctx.dimensions["team"] = "x"

    def test_get_trace_id(self):
        self.assertEqual(get_trace_id(TrackingContext(trace_id="t-9")), "t-9")
        generated = get_trace_id(None)
        self.assertEqual(len(generated), 36)
        self.assertNotEqual(get_trace_id(TrackingContext()), get_trace_id(TrackingContext()))

    def test_with_new_trace_id(self):
        ctx = TrackingContext(trace_id="old").with_new_trace_id()
        self.assertNotEqual(ctx.trace_id, "old")
        self.assertTrue(ctx.trace_id)

    def test_get_dimensions(self):
        ctx = TrackingContext(user_id="u1", feature="f1", dimensions={"user_id": "custom", "team": "x"})
        self.assertEqual(get_dimensions(ctx), {"user_id": "u1", "team": "x", "feature": "f1"})
        self.assertEqual(get_dimensions(None), {})
        self.assertEqual(get_dimensions(TrackingContext()), {})
        self.assertEqual(get_user_id(None), "")


class TestUsageExtraction(unittest.TestCase):

    def test_openai_object(self):
        response = SimpleNamespace(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=7))
        self.assertEqual(extract_usage(Provider.OPENAI, response), (12, 7))

    def test_anthropic_dict(self):
        response = {"usage": {"input_tokens": 30, "output_tokens": 4}}
        self.assertEqual(extract_usage("anthropic", response), (30, 4))

    def test_google(self):
        response = SimpleNamespace(usage_metadata=SimpleNamespace(prompt_token_count=8, candidates_token_count=2))
        self.assertEqual(extract_usage(Provider.GOOGLE, response), (8, 2))

    def test_missing_usage(self):
        self.assertEqual(extract_usage(Provider.OPENAI, None), (0, 0))
        self.assertEqual(extract_usage(Provider.OPENAI, {"choices": []}), (0, 0))
        self.assertEqual(extract_usage(Provider.MISTRAL, MagicMock()), (0, 0))

    def test_unknown_provider_tries_all_shapes(self):
        response = {"usage": {"input_tokens": 3, "output_tokens": 1}}
        self.assertEqual(extract_usage("other", response), (3, 1))

    def test_non_finite_counts_are_zero(self):
        response = {"usage": {"prompt_tokens": float('nan'), "completion_tokens": float('inf')}}
        self.assertEqual(extract_usage(Provider.OPENAI, response), (0, 0))


class TestTracker(unittest.TestCase):

    def setUp(self):
        self.storage = InMemoryStorageAdapter()
        self.tracker = Tracker(self.storage)

    def test_build_record_normalizes(self):
        record = build_request_record("t-1", "openai", "gpt-4o", -10, -5, timedelta(milliseconds=20))
        self.assertEqual(record.input_tokens, 0)
        self.assertEqual(record.output_tokens, 0)
        self.assertEqual(record.total_tokens, 0)
        self.assertEqual(record.status_code, 200)
        self.assertEqual(record.error_type, ErrorType.NONE)
        self.assertEqual(record.responded_at - record.requested_at, timedelta(milliseconds=20))

    def test_build_record_with_error(self):
        record = build_request_record("", Provider.ANTHROPIC, "claude", 5, 0, timedelta(0),
                                      error=RuntimeError("429 too many requests"))
        self.assertEqual(record.status_code, 500)
        self.assertEqual(record.error, "429 too many requests")
        self.assertEqual(record.error_type, ErrorType.RATE_LIMIT)
        self.assertTrue(record.trace_id)

    def test_build_record_with_unusable_token_counts(self):
        record = build_request_record("t-1", "openai", "gpt-4o", float('nan'), "many", timedelta(0))
        self.assertEqual((record.input_tokens, record.output_tokens), (0, 0))

        record = build_request_record("t-1", "openai", "gpt-4o", float('inf'), 7.9, timedelta(0))
        self.assertEqual((record.input_tokens, record.output_tokens), (0, 7))

    def test_build_record_with_empty_error_is_success(self):
        record = build_request_record("t-1", "openai", "gpt-4o", 1, 1, timedelta(0), error="")
        self.assertEqual(record.status_code, 200)
        self.assertEqual(record.error, "")
        self.assertEqual(record.error_type, ErrorType.NONE)
        self.assertFalse(record.has_error)

    def test_build_record_drops_trace_id_dimension(self):
        record = build_request_record("t-1", "openai", "gpt-4o", 1, 1, timedelta(0),
                                      dimensions={"trace_id": "t-1", "team": "search", "": "x"})
        self.assertEqual(record.dimension_map(), {"team": "search"})

    def test_track_request_saves(self):
        options = RequestOptions(provider="openai", model="gpt-4o", trace_id="t-1", dimensions={"team": "a"})
        record = self.tracker.track_request(options, 100, 20, timedelta(milliseconds=50))

        self.assertEqual(self.tracker.get_request(record.id), record)
        self.assertEqual(self.tracker.get_requests_by_trace("t-1"), [record])
        self.assertEqual(record.total_tokens, 120)

    def test_start_request_measures_latency(self):
        tracked = self.tracker.start_request("t-2", Provider.MISTRAL, "mistral-large")
        time.sleep(0.01)
        record = tracked.finish_with_dimensions(10, 2, {"feature": "chat"})

        self.assertGreaterEqual(record.latency, timedelta(milliseconds=10))
        self.assertEqual(record.dimension_map(), {"feature": "chat"})
        self.assertEqual(record.provider, Provider.MISTRAL)

    def test_finish_with_error(self):
        record = self.tracker.start_request("t-3", "google", "gemini").finish(0, 0, error="timeout")
        self.assertEqual(record.status_code, 500)
        self.assertEqual(record.error_type, ErrorType.TIMEOUT)

    def test_storage_errors_propagate(self):
        storage = Mock()
        storage.save.side_effect = RuntimeError("db down")
        tracker = Tracker(storage)
        with self.assertRaises(RuntimeError):
            tracker.track_request(RequestOptions(provider="openai", model="gpt-4o"), 1, 1, timedelta(0))

    def test_delete_and_cleanup(self):
        old = make_record(age=timedelta(days=10))
        fresh = make_record()
        self.storage.save(old)
        self.storage.save(fresh)

        self.assertEqual(self.tracker.cleanup_old_requests(utc_now() - timedelta(days=5)), 1)
        self.tracker.delete_request(fresh.id)
        self.assertEqual(len(self.storage), 0)
        with self.assertRaises(RecordNotFoundError):
            self.tracker.delete_request(fresh.id)


class TestInMemoryStorage(unittest.TestCase):

    def setUp(self):
        self.storage = InMemoryStorageAdapter()
        self.records = [
            make_record(Provider.OPENAI, "gpt-4o", 100, 50, latency_ms=100, dimensions={"team": "a"}),
            make_record(Provider.OPENAI, "gpt-4o", 10, 5, latency_ms=300, error="500 server error"),
            make_record(Provider.ANTHROPIC, "claude", 40, 10, latency_ms=200, trace_id="trace-2",
                        dimensions={"team": "b"}),
        ]
        for record in self.records:
            self.storage.save(record)

    def test_get_missing(self):
        with self.assertRaises(RecordNotFoundError):
            self.storage.get("missing")

    def test_query_filters(self):
        self.assertEqual(len(self.storage.query(RequestFilter(provider=Provider.OPENAI))), 2)
        self.assertEqual(len(self.storage.query(RequestFilter(has_error=True))), 1)
        self.assertEqual(len(self.storage.query(RequestFilter(min_tokens=50))), 2)
        self.assertEqual(len(self.storage.query(RequestFilter(error_type=ErrorType.SERVER_ERROR))), 1)

        by_dimension = self.storage.query(RequestFilter(dimensions=[DimensionTag(key="team", value="b")]))
        self.assertEqual([r.id for r in by_dimension], [self.records[2].id])

    def test_query_ordering_and_paging(self):
        ordered = self.storage.query(RequestFilter(order_by='total_tokens', order_desc=True))
        self.assertEqual([r.total_tokens for r in ordered], [150, 50, 15])

        page = self.storage.query(RequestFilter(order_by='total_tokens', limit=1, offset=1))
        self.assertEqual([r.total_tokens for r in page], [50])

    def test_invalid_order_by(self):
        with self.assertRaises(ValueError):
            RequestFilter(order_by='id; drop table')

    def test_aggregate_grouped(self):
        results = self.storage.aggregate(['provider', 'model', 'unsupported'])
        self.assertEqual([(r.provider, r.model) for r in results],
                         [(Provider.ANTHROPIC, "claude"), (Provider.OPENAI, "gpt-4o")])

        openai = results[1]
        self.assertEqual(openai.total_requests, 2)
        self.assertEqual(openai.total_tokens, 165)
        self.assertEqual(openai.avg_latency, timedelta(milliseconds=200))
        self.assertEqual(openai.error_count, 1)

    def test_aggregate_ungrouped(self):
        results = self.storage.aggregate([])
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].total_requests, 3)
        self.assertIsNone(results[0].provider)


class TestTrackingClient(unittest.TestCase):

    def setUp(self):
        self.storage = InMemoryStorageAdapter()
        self.response = SimpleNamespace(usage=SimpleNamespace(prompt_tokens=20, completion_tokens=8))

    def test_requires_storage(self):
        with self.assertRaises(TrackerConfigurationError):
            TrackingClient(None)

    def test_default_logger_is_noop(self):
        client = TrackingClient(self.storage)
        self.assertIsInstance(client.logger, NoOpLogger)

    def test_trace_call_records_usage(self):
        client = TrackingClient(self.storage)
        create = Mock(return_value=self.response)
        ctx = TrackingContext(trace_id="t-1")

        result = client.trace_call(ctx, Provider.OPENAI, "gpt-4o", create, model="gpt-4o", messages=[])

        self.assertIs(result, self.response)
        create.assert_called_once_with(model="gpt-4o", messages=[])
        record = self.storage.get_by_trace_id("t-1")[0]
        self.assertEqual((record.input_tokens, record.output_tokens), (20, 8))
        self.assertEqual(record.status_code, 200)

    def test_token_normalization(self):
        client = TrackingClient(self.storage)
        client.track(None, Provider.OPENAI, "gpt-4o", -10, -5, timedelta(milliseconds=5))

        record = self.storage.query()[0]
        self.assertEqual(record.input_tokens, 0)
        self.assertEqual(record.output_tokens, 0)

    def test_provider_error_passes_through(self):
        client = TrackingClient(self.storage)
        error = ConnectionError("dial tcp: connection refused")
        create = Mock(side_effect=error)

        with self.assertRaises(ConnectionError) as cm:
            client.trace_call(None, "openai", "gpt-4o", create)

        self.assertIs(cm.exception, error)
        record = self.storage.query()[0]
        self.assertEqual(record.status_code, 500)
        self.assertEqual(record.error_type, ErrorType.NETWORK)

    def test_storage_failure_is_logged_not_raised(self):
        storage = Mock()
        storage.save.side_effect = RuntimeError("db down")
        logger = Mock()
        client = TrackingClient(storage, logger=logger)

        result = client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: self.response)

        self.assertIs(result, self.response)
        logger.error.assert_called_once()
        args, kwargs = logger.error.call_args
        self.assertEqual(args[0], "Failed to track request")
        self.assertEqual(kwargs['error'], "db down")
        self.assertEqual(kwargs['input_tokens'], 20)

    def test_storage_failure_with_provider_error(self):
        storage = Mock()
        storage.save.side_effect = RuntimeError("db down")
        logger = Mock()
        client = TrackingClient(storage, logger=logger)
        error = ValueError("invalid model")

        def create():
            raise error

        with self.assertRaises(ValueError) as cm:
            client.trace_call(None, Provider.OPENAI, "gpt-4o", create)

        self.assertIs(cm.exception, error)
        logger.error.assert_called_once()

    def test_circuit_open_logged_as_warning(self):
        storage = Mock()
        storage.save.side_effect = RuntimeError("db down")
        logger = Mock()
        client = TrackingClient(storage, logger=logger, circuit_breaker=with_circuit_breaker(1, 60))

        client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: self.response)
        result = client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: self.response)

        self.assertIs(result, self.response)
        self.assertEqual(storage.save.call_count, 1)
        self.assertEqual(client.circuit_state(), CircuitState.OPEN)
        logger.warn.assert_called_once()

    def test_rejects_missing_call_and_model(self):
        client = TrackingClient(self.storage)
        create = Mock()

        with self.assertRaises(TrackerConfigurationError):
            client.trace_call(None, Provider.OPENAI, "gpt-4o", None)
        with self.assertRaises(TrackerConfigurationError):
            client.trace_call(None, Provider.OPENAI, "", create)
        with self.assertRaises(TrackerConfigurationError):
            client.trace_call(None, "unknown-vendor", "model", create)

        create.assert_not_called()
        self.assertEqual(len(self.storage), 0)

    def test_async_tracking_does_not_block(self):
        storage = SlowStorage(0.05)
        client = TrackingClient(storage, async_tracking=True)

        started = time.perf_counter()
        client.trace_call(TrackingContext(trace_id="t-async"), Provider.OPENAI, "gpt-4o", lambda: self.response)
        elapsed = time.perf_counter() - started

        self.assertLess(elapsed, 0.03)
        self.assertTrue(client.flush(timeout=2))
        self.assertEqual(len(storage.get_by_trace_id("t-async")), 1)

    def test_sync_tracking_waits_for_save(self):
        storage = SlowStorage(0.05)
        client = TrackingClient(storage)

        started = time.perf_counter()
        client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: self.response)
        elapsed = time.perf_counter() - started

        self.assertGreaterEqual(elapsed, 0.04)
        self.assertEqual(len(storage), 1)

    def test_dimension_merge(self):
        client = TrackingClient(self.storage)
        ctx = (TrackingContext(trace_id="t-dim")
               .with_user_id("u1")
               .with_feature("f1")
               .with_dimensions({"trace_id": "t-dim", "team": "search"}))

        client.trace_call(ctx, Provider.ANTHROPIC, "claude", lambda: None)

        record = self.storage.get_by_trace_id("t-dim")[0]
        self.assertEqual(record.dimension_map(), {"team": "search", "user_id": "u1", "feature": "f1"})
        self.assertNotIn("trace_id", [tag.key for tag in record.dimensions])

    def test_async_context_captured_at_dispatch(self):
        client = TrackingClient(self.storage, async_tracking=True)
        ctx = TrackingContext(trace_id="t-cap", user_id="u1")

        client.track(ctx, Provider.OPENAI, "gpt-4o", 1, 1, timedelta(0))
        client.flush(timeout=2)

        record = self.storage.get_by_trace_id("t-cap")[0]
        self.assertEqual(record.dimension_map(), {"user_id": "u1"})

    def test_atrace_call(self):
        client = TrackingClient(self.storage)

        async def create(**kwargs):
            return self.response

        result = asyncio.run(client.atrace_call(
            TrackingContext(trace_id="t-aio"), Provider.OPENAI, "gpt-4o", create, model="gpt-4o"
        ))

        self.assertIs(result, self.response)
        self.assertEqual(self.storage.get_by_trace_id("t-aio")[0].input_tokens, 20)

    def test_atrace_call_passes_exception_through(self):
        client = TrackingClient(self.storage)
        error = TimeoutError("request timeout")

        async def create():
            raise error

        with self.assertRaises(TimeoutError) as cm:
            asyncio.run(client.atrace_call(None, Provider.GOOGLE, "gemini", create))

        self.assertIs(cm.exception, error)
        self.assertEqual(self.storage.query()[0].error_type, ErrorType.TIMEOUT)

    def test_custom_usage_extractor(self):
        client = TrackingClient(self.storage)
        client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: "raw", usage_extractor=lambda r: (3, 4))
        record = self.storage.query()[0]
        self.assertEqual((record.input_tokens, record.output_tokens), (3, 4))

    def test_track_with_nan_tokens_still_saves(self):
        logger = Mock()
        client = TrackingClient(self.storage, logger=logger)

        client.track(None, Provider.OPENAI, "gpt-4o", float('nan'), 3, timedelta(milliseconds=5))

        record = self.storage.query()[0]
        self.assertEqual((record.input_tokens, record.output_tokens), (0, 3))
        logger.error.assert_not_called()

    def test_bad_extractor_result_keeps_response(self):
        logger = Mock()
        client = TrackingClient(self.storage, logger=logger)

        result = client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: self.response,
                                   usage_extractor=lambda r: None)

        self.assertIs(result, self.response)
        record = self.storage.query()[0]
        self.assertEqual((record.input_tokens, record.output_tokens), (0, 0))
        logger.warn.assert_called_once()

    def test_extractor_non_finite_result_is_zeroed(self):
        client = TrackingClient(self.storage)
        client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: "raw",
                          usage_extractor=lambda r: (float('nan'), float('inf')))
        record = self.storage.query()[0]
        self.assertEqual((record.input_tokens, record.output_tokens), (0, 0))

    def test_raising_usage_attribute_keeps_response(self):
        class BrokenResponse:
            @property
            def usage(self):
                raise RuntimeError("usage not loaded")

        response = BrokenResponse()
        logger = Mock()
        client = TrackingClient(self.storage, logger=logger)

        result = client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: response)

        self.assertIs(result, response)
        self.assertEqual(self.storage.query()[0].total_tokens, 0)
        self.assertEqual(logger.warn.call_args.kwargs['error'], "usage not loaded")

    def test_nan_usage_keeps_response(self):
        response = SimpleNamespace(usage=SimpleNamespace(prompt_tokens=float('nan'), completion_tokens=2))
        client = TrackingClient(self.storage)

        result = client.trace_call(None, Provider.OPENAI, "gpt-4o", lambda: response)

        self.assertIs(result, response)
        self.assertEqual(self.storage.query()[0].output_tokens, 2)

    def test_atrace_call_bad_usage_keeps_response(self):
        client = TrackingClient(self.storage, logger=Mock())

        async def create():
            return self.response

        result = asyncio.run(client.atrace_call(
            None, Provider.OPENAI, "gpt-4o", create, usage_extractor=lambda r: "not a pair"
        ))

        self.assertIs(result, self.response)
        self.assertEqual(len(self.storage), 1)

    def test_async_tracking_uses_bounded_pool(self):
        storage = SlowStorage(0.05)
        client = TrackingClient(storage, async_tracking=True, max_workers=2)
        existing = set(threading.enumerate())

        for _ in range(20):
            client.track(None, Provider.OPENAI, "gpt-4o", 1, 1, timedelta(0))

        workers = [t for t in threading.enumerate() if t not in existing]
        self.assertLessEqual(len(workers), 2)
        self.assertTrue(client.flush(timeout=5))
        self.assertEqual(len(storage), 20)
        client.close()

    def test_flush_times_out_on_slow_save(self):
        storage = SlowStorage(0.5)
        client = TrackingClient(storage, async_tracking=True, max_workers=1)

        client.track(None, Provider.OPENAI, "gpt-4o", 1, 1, timedelta(0))

        self.assertFalse(client.flush(timeout=0.05))
        self.assertTrue(client.flush(timeout=2))

    def test_track_after_close_is_logged(self):
        logger = Mock()
        client = TrackingClient(self.storage, logger=logger, async_tracking=True)
        client.close()

        client.track(None, Provider.OPENAI, "gpt-4o", 1, 1, timedelta(0))

        logger.error.assert_called_once()
        self.assertEqual(len(self.storage), 0)

    def test_provider_helpers(self):
        client = TrackingClient(self.storage)

        create = Mock(return_value=self.response)
        client.trace_openai_request(None, create, model="gpt-4o", messages=[{"role": "user", "content": "hi"}])
        create.assert_called_once_with(model="gpt-4o", messages=[{"role": "user", "content": "hi"}])

        anthropic = Mock(return_value={"usage": {"input_tokens": 9, "output_tokens": 3}})
        client.trace_anthropic_request(None, anthropic, model="claude-3-haiku", max_tokens=10)

        chat = Mock(return_value=self.response)
        client.trace_mistral_request(None, chat, "mistral-small", [{"role": "user"}], temperature=0)
        chat.assert_called_once_with("mistral-small", [{"role": "user"}], temperature=0)

        generate = Mock(return_value=SimpleNamespace(
            usage_metadata=SimpleNamespace(prompt_token_count=5, candidates_token_count=1)))
        client.trace_google_request(None, generate, "gemini-pro", "part one", "part two")
        generate.assert_called_once_with("part one", "part two")

        stats = client.get_token_stats()
        self.assertEqual(set(stats), {"openai/gpt-4o", "anthropic/claude-3-haiku",
                                      "mistral/mistral-small", "google/gemini-pro"})
        self.assertEqual(stats["anthropic/claude-3-haiku"].input_tokens, 9)
        self.assertEqual(stats["google/gemini-pro"].output_tokens, 1)

    def test_context_manager_closes_storage(self):
        storage = Mock()
        with TrackingClient(storage) as client:
            client.track(None, Provider.OPENAI, "gpt-4o", 1, 1, timedelta(0))
        storage.close.assert_called_once()

    def test_circuit_state_without_breaker(self):
        self.assertIsNone(TrackingClient(self.storage).circuit_state())


class TestSimpleTracker(unittest.TestCase):

    def setUp(self):
        self.storage = InMemoryStorageAdapter()

    def test_token_tracker(self):
        tracker = TokenTracker(self.storage)
        tracker.track(Provider.OPENAI, "gpt-4o", 10, 5)
        tracker.track_with_context(TrackingContext(user_id="u1"), Provider.OPENAI, "gpt-4o", 1, 1,
                                   error="401 unauthorized")

        stats = tracker.get_token_stats()["openai/gpt-4o"]
        self.assertEqual(stats.total_requests, 2)
        self.assertEqual(stats.total_tokens, 17)
        self.assertEqual(stats.error_count, 1)

    def test_quick_track_logs_failures(self):
        storage = Mock()
        storage.save.side_effect = RuntimeError("db down")

        with self.assertLogs('lib.request_tracer.simple_tracker', level='ERROR') as cm:
            result = quick_track(TokenTracker(storage), Provider.OPENAI, "gpt-4o", 1, 1)

        self.assertIsNone(result)
        self.assertIn("db down", cm.output[0])

    def test_track_helpers(self):
        tracker = SimpleTracker(self.storage)
        tracker.track_openai("gpt-4o", 10, 5, timedelta(milliseconds=100))
        tracker.track_anthropic("claude", 20, 5, timedelta(milliseconds=300), error="503 overloaded")
        record = tracker.track_with_dimensions(Provider.GOOGLE, "gemini", 1, 1, timedelta(0), {"team": "x"})

        self.assertEqual(record.dimension_map(), {"team": "x"})
        self.assertEqual(len(tracker.tracker.query_requests()), 3)

    def test_get_usage_stats(self):
        tracker = SimpleTracker(self.storage)
        tracker.track_openai("gpt-4o", 10, 5, timedelta(milliseconds=100))
        tracker.track_openai("gpt-4o-mini", 10, 5, timedelta(milliseconds=400), error="timeout")
        tracker.track_anthropic("claude", 20, 5, timedelta(milliseconds=900))

        stats = tracker.get_usage_stats(Provider.OPENAI)
        self.assertEqual(stats.total_requests, 2)
        self.assertEqual(stats.total_tokens, 30)
        self.assertEqual(stats.error_count, 1)
        self.assertEqual(stats.error_rate, 50.0)
        self.assertEqual(stats.max_latency, timedelta(milliseconds=400))

        self.assertEqual(tracker.get_usage_stats().total_requests, 3)

    def test_empty_usage_stats(self):
        stats = SimpleTracker(self.storage).get_usage_stats()
        self.assertEqual(stats.total_requests, 0)
        self.assertEqual(stats.error_rate, 0.0)


class TestStdlibLogger(unittest.TestCase):

    def test_formats_fields(self):
        logger = StdlibLogger()
        with self.assertLogs('request_tracer', level='WARNING') as cm:
            logger.warn("Circuit open", provider="openai", model="gpt-4o")
        self.assertIn("Circuit open provider=openai model=gpt-4o", cm.output[0])

    def test_respects_level(self):
        logger = StdlibLogger()
        with self.assertLogs('request_tracer', level='ERROR') as cm:
            logger.info("ignored")
            logger.error("Failed to track request", error="boom")
        self.assertEqual(len(cm.output), 1)


class TestTrackerConfig(unittest.TestCase):

    def write_yaml(self, content):
        f = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        f.write(content)
        f.close()
        self.addCleanup(os.remove, f.name)
        return f.name

    def test_defaults_when_file_missing(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertLogs('lib.request_tracer.config', level='WARNING'):
                config = load_tracker_config('/nonexistent/tracer.yaml')

        self.assertEqual(config.database_url, 'sqlite:///llm_requests.db')
        self.assertFalse(config.async_tracking)
        self.assertEqual(config.circuit_breaker_max_failures, 5)
        self.assertEqual(config.retention_days, 90)

    def test_yaml_with_nested_circuit_breaker(self):
        path = self.write_yaml(
            "database_url: sqlite://\n"
            "async_tracking: true\n"
            "log_level: debug\n"
            "circuit_breaker:\n"
            "  enabled: true\n"
            "  max_failures: 3\n"
            "  reset_timeout: 10\n"
        )
        with patch.dict(os.environ, {}, clear=True):
            config = load_tracker_config(path)

        self.assertEqual(config.database_url, 'sqlite://')
        self.assertTrue(config.async_tracking)
        self.assertTrue(config.circuit_breaker_enabled)
        self.assertEqual(config.circuit_breaker_max_failures, 3)
        self.assertEqual(config.circuit_breaker_reset_timeout, 10.0)
        self.assertEqual(config.log_level, 'DEBUG')

    def test_environment_overrides(self):
        path = self.write_yaml("retention_days: 30\nasync_tracking: true\n")
        env = {
            'LLM_TRACER_RETENTION_DAYS': '7',
            'LLM_TRACER_ASYNC_TRACKING': 'off',
            'LLM_TRACER_CIRCUIT_BREAKER': 'yes',
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_tracker_config(path)

        self.assertEqual(config.retention_days, 7)
        self.assertFalse(config.async_tracking)
        self.assertTrue(config.circuit_breaker_enabled)

    def test_config_path_from_environment(self):
        path = self.write_yaml("retention_days: 12\n")
        with patch.dict(os.environ, {'LLM_TRACER_CONFIG_PATH': path}, clear=True):
            self.assertEqual(load_tracker_config().retention_days, 12)

    def test_invalid_yaml_falls_back(self):
        path = self.write_yaml("database_url: [unclosed\n")
        with patch.dict(os.environ, {}, clear=True):
            with self.assertLogs('lib.request_tracer.config', level='ERROR'):
                config = load_tracker_config(path)
        self.assertEqual(config, TrackerConfig())

    def test_invalid_values_raise(self):
        with patch.dict(os.environ, {'LLM_TRACER_ASYNC_TRACKING': 'maybe'}, clear=True):
            with self.assertRaises(TrackerConfigurationError):
                load_tracker_config('/nonexistent/tracer.yaml')

        with patch.dict(os.environ, {'LLM_TRACER_CB_MAX_FAILURES': '0'}, clear=True):
            with self.assertRaises(TrackerConfigurationError):
                load_tracker_config('/nonexistent/tracer.yaml')

        with patch.dict(os.environ, {'LLM_TRACER_LOG_LEVEL': 'loud'}, clear=True):
            with self.assertRaises(TrackerConfigurationError):
                load_tracker_config('/nonexistent/tracer.yaml')

    def test_create_client(self):
        storage = InMemoryStorageAdapter()
        config = TrackerConfig(async_tracking=True, circuit_breaker_enabled=True,
                               circuit_breaker_max_failures=2, circuit_breaker_reset_timeout=5)

        client = create_client(storage, config)

        self.assertTrue(client.async_tracking)
        self.assertEqual(client.circuit_breaker.max_failures, 2)
        self.assertEqual(client.circuit_state(), CircuitState.CLOSED)
        self.assertIsInstance(client.logger, StdlibLogger)

        self.assertIsNone(create_client(storage).circuit_breaker)

    def test_server_sample_sets_only_server_settings(self):
        conf_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'example.gunicorn.conf.py')
        raw_env = runpy.run_path(conf_path)['raw_env']
        tracer_keys = {entry.split('=', 1)[0] for entry in raw_env if entry.startswith('LLM_TRACER_')}

        server_keys = {'LLM_TRACER_CONFIG_PATH', 'LLM_TRACER_DATABASE_URL',
                       'LLM_TRACER_RETENTION_DAYS', 'LLM_TRACER_LOG_LEVEL'}
        self.assertTrue(tracer_keys)
        self.assertLessEqual(tracer_keys, server_keys)


class TestSQLAlchemyStorage(unittest.TestCase):

    def setUp(self):
        self.storage = SQLAlchemyStorageAdapter(init_database('sqlite://'))

    def tearDown(self):
        self.storage.close()

    def count(self, table):
        db = self.storage.SessionLocal()
        try:
            return db.execute(select(func.count()).select_from(table)).scalar()
        finally:
            db.close()

    def test_from_url_creates_tables(self):
        storage = SQLAlchemyStorageAdapter.from_url('sqlite://')
        try:
            tables = set(inspect(storage.engine).get_table_names())
            self.assertTrue({"llm_requests", "dimension_tags", "request_dimensions"} <= tables)
            storage.save(make_record())
            self.assertEqual(len(storage.query()), 1)
        finally:
            storage.close()

    def test_save_and_get(self):
        record = make_record(dimensions={"user_id": "u1", "team": "search"}, error="connection reset")
        self.storage.save(record)

        loaded = self.storage.get(record.id)
        self.assertEqual(loaded.trace_id, record.trace_id)
        self.assertEqual(loaded.provider, Provider.OPENAI)
        self.assertEqual(loaded.error_type, ErrorType.NETWORK)
        self.assertEqual(loaded.dimension_map(), {"user_id": "u1", "team": "search"})
        self.assertEqual(loaded.requested_at, record.requested_at)
        self.assertIsNotNone(loaded.requested_at.tzinfo)
        self.assertAlmostEqual(loaded.latency.total_seconds(), 0.1, places=6)

    def test_get_missing(self):
        with self.assertRaises(RecordNotFoundError):
            self.storage.get("missing")
        with self.assertRaises(RecordNotFoundError):
            self.storage.delete("missing")

    def test_dimension_tags_are_shared(self):
        self.storage.save(make_record(dimensions={"team": "search"}))
        self.storage.save(make_record(dimensions={"team": "search", "tier": "pro"}))

        self.assertEqual(self.count(DimensionTagRow.__table__), 2)
        self.assertEqual(self.count(request_dimensions), 3)

    def test_query(self):
        self.storage.save(make_record(Provider.OPENAI, "gpt-4o", 100, 50, dimensions={"team": "a"}))
        self.storage.save(make_record(Provider.OPENAI, "gpt-4o", 10, 5, error="invalid request"))
        self.storage.save(make_record(Provider.ANTHROPIC, "claude", 40, 10, trace_id="trace-2",
                                      dimensions={"team": "b"}))

        self.assertEqual(len(self.storage.get_by_trace_id("trace-1")), 2)
        self.assertEqual(len(self.storage.query(RequestFilter(has_error=False))), 2)
        self.assertEqual(len(self.storage.query(RequestFilter(max_tokens=50))), 2)

        tagged = self.storage.query(RequestFilter(dimensions=[DimensionTag(key="team", value="a")]))
        self.assertEqual([r.total_tokens for r in tagged], [150])

        ordered = self.storage.query(RequestFilter(order_by='total_tokens', order_desc=True, limit=2))
        self.assertEqual([r.total_tokens for r in ordered], [150, 50])

        recent = self.storage.query(RequestFilter(start_time=utc_now() - timedelta(minutes=1)))
        self.assertEqual(len(recent), 3)

    def test_aggregate(self):
        self.storage.save(make_record(Provider.OPENAI, "gpt-4o", latency_ms=100))
        self.storage.save(make_record(Provider.OPENAI, "gpt-4o", latency_ms=300, error="502 bad gateway"))
        self.storage.save(make_record(Provider.ANTHROPIC, "claude", latency_ms=200))

        results = self.storage.aggregate(['provider', 'model'])
        self.assertEqual([(r.provider, r.model) for r in results],
                         [(Provider.ANTHROPIC, "claude"), (Provider.OPENAI, "gpt-4o")])
        self.assertEqual(results[1].total_requests, 2)
        self.assertEqual(results[1].total_tokens, 30)
        self.assertEqual(results[1].error_count, 1)
        self.assertAlmostEqual(results[1].avg_latency.total_seconds(), 0.2, places=6)

        overall = self.storage.aggregate([], RequestFilter(provider=Provider.OPENAI))
        self.assertEqual(len(overall), 1)
        self.assertEqual(overall[0].total_requests, 2)

    def test_delete(self):
        record = make_record(dimensions={"team": "a"})
        self.storage.save(record)
        self.storage.delete(record.id)

        self.assertEqual(self.count(RequestLog.__table__), 0)
        self.assertEqual(self.count(request_dimensions), 0)

    def test_delete_older_than(self):
        self.storage.save(make_record(age=timedelta(days=40), dimensions={"team": "a"}))
        self.storage.save(make_record(dimensions={"team": "a"}))

        deleted = self.storage.delete_older_than(utc_now() - timedelta(days=30))

        self.assertEqual(deleted, 1)
        self.assertEqual(self.count(RequestLog.__table__), 1)
        self.assertEqual(self.count(request_dimensions), 1)

    def test_tracking_client_integration(self):
        client = TrackingClient(self.storage)
        ctx = TrackingContext(trace_id="t-sql", workflow="ingest")
        response = {"usage": {"prompt_tokens": 7, "completion_tokens": 3}}

        client.trace_call(ctx, Provider.OPENAI, "gpt-4o", lambda: response)

        record = self.storage.get_by_trace_id("t-sql")[0]
        self.assertEqual(record.total_tokens, 10)
        self.assertEqual(record.dimension_map(), {"workflow": "ingest"})


class TestUsageRoutes(unittest.TestCase):

    def setUp(self):
        self.storage = InMemoryStorageAdapter()
        app.dependency_overrides[get_tracker] = lambda: Tracker(self.storage)
        self.client = TestClient(app)

        self.first = make_record(Provider.OPENAI, "gpt-4o", 100, 50, dimensions={"team": "a"})
        self.second = make_record(Provider.ANTHROPIC, "claude", 40, 10, trace_id="trace-2",
                                  error="429 rate limit")
        self.old = make_record(Provider.OPENAI, "gpt-4o", 1, 1, trace_id="trace-3", age=timedelta(days=40))
        for record in (self.first, self.second, self.old):
            self.storage.save(record)

    def tearDown(self):
        app.dependency_overrides.clear()

    def test_list_requests(self):
        response = self.client.post("/usage/requests", json={"provider": "openai", "order_by": "total_tokens"})
        self.assertEqual(response.status_code, 200)

        body = response.json()
        self.assertEqual(body["total_records"], 2)
        self.assertEqual([r["total_tokens"] for r in body["data"]], [2, 150])
        self.assertEqual(body["data"][1]["dimensions"], {"team": "a"})
        self.assertEqual(body["data"][1]["latency_ms"], 100.0)

    def test_list_requests_by_dimension(self):
        response = self.client.post("/usage/requests", json={"dimensions": {"team": "a"}})
        self.assertEqual([r["id"] for r in response.json()["data"]], [self.first.id])

    def test_invalid_date(self):
        response = self.client.post("/usage/requests", json={"start_time": "yesterday"})
        self.assertIn("error", response.json())

    def test_invalid_order_by(self):
        response = self.client.post("/usage/requests", json={"order_by": "secret"})
        self.assertIn("error", response.json())

    def test_invalid_provider(self):
        response = self.client.post("/usage/requests", json={"provider": "unknown"})
        self.assertEqual(response.status_code, 422)

    def test_get_request(self):
        response = self.client.get(f"/usage/requests/{self.second.id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["error_type"], "rate_limit")
        self.assertEqual(response.json()["status_code"], 500)

        self.assertEqual(self.client.get("/usage/requests/missing").status_code, 404)

    def test_delete_request(self):
        response = self.client.delete(f"/usage/requests/{self.first.id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.delete(f"/usage/requests/{self.first.id}").status_code, 404)
        self.assertEqual(len(self.storage), 2)

    def test_get_trace(self):
        body = self.client.get("/usage/traces/trace-1").json()
        self.assertEqual(body["total_records"], 1)
        self.assertEqual(body["total_tokens"], 150)

    def test_aggregates(self):
        body = self.client.post("/usage/aggregates", json={"group_by": ["provider"]}).json()
        self.assertEqual([row["provider"] for row in body["data"]], ["anthropic", "openai"])
        self.assertEqual(body["data"][1]["total_requests"], 2)
        self.assertEqual(body["data"][0]["error_count"], 1)

    def test_token_stats(self):
        body = self.client.post("/usage/token-stats", json={}).json()
        self.assertEqual(body["data"]["openai/gpt-4o"]["total_requests"], 2)

        since = (utc_now() - timedelta(days=1)).isoformat()
        body = self.client.post("/usage/token-stats", json={"since": since}).json()
        self.assertEqual(body["data"]["openai/gpt-4o"]["total_requests"], 1)

        body = self.client.post("/usage/token-stats", json={"since": "not-a-date"}).json()
        self.assertIn("error", body)

    def test_cleanup(self):
        response = self.client.post("/usage/cleanup", json={"older_than_days": 30})
        self.assertEqual(response.json()["deleted"], 1)
        self.assertEqual(len(self.storage), 2)

        self.assertEqual(self.client.post("/usage/cleanup", json={"older_than_days": 0}).status_code, 422)

    def test_storage_not_initialized(self):
        app.dependency_overrides.clear()
        response = self.client.get("/usage/traces/trace-1")
        self.assertEqual(response.status_code, 503)


class TestRetentionJob(unittest.TestCase):

    def test_purge_expired_requests(self):
        storage = InMemoryStorageAdapter()
        storage.save(make_record(age=timedelta(days=100)))
        storage.save(make_record(age=timedelta(days=10)))

        with self.assertLogs('api.jobs.retention', level='INFO'):
            deleted = purge_expired_requests(storage, 90)

        self.assertEqual(deleted, 1)
        self.assertEqual(len(storage), 1)

    def test_setup_retention_job(self):
        scheduler = Mock()
        factory = Mock()

        setup_retention_job(scheduler, factory, 30)

        kwargs = scheduler.add_job.call_args.kwargs
        self.assertEqual(kwargs['id'], 'daily_request_retention')
        self.assertEqual(kwargs['args'], [factory, 30])
        self.assertTrue(kwargs['replace_existing'])
        self.assertIn("hour='2'", str(kwargs['trigger']))

    def test_run_retention_job_logs_errors(self):
        storage = Mock()
        storage.delete_older_than.side_effect = RuntimeError("db down")

        with self.assertLogs('api.jobs.scheduler', level='ERROR') as cm:
            asyncio.run(run_retention_job(lambda: storage, 90))

        self.assertIn("db down", cm.output[0])

    def test_run_retention_job(self):
        storage = InMemoryStorageAdapter()
        storage.save(make_record(age=timedelta(days=5)))
        asyncio.run(run_retention_job(lambda: storage, 1))
        self.assertEqual(len(storage), 0)


if __name__ == '__main__':
    unittest.main()
