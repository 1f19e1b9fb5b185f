"""
SQLAlchemy implementation of the request tracer's StorageAdapter.

Records live in llm_requests; dimension tags are shared rows in
dimension_tags linked through request_dimensions. Timestamps are stored as
naive UTC and handed back timezone-aware.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from api.models.database import init_database
from api.models.request_tracking import DimensionTagRow, RequestLog, request_dimensions
from lib.request_tracer.errors import RecordNotFoundError
from lib.request_tracer.models import (
    AggregateResult,
    DimensionTag,
    ErrorType,
    Provider,
    RequestFilter,
    RequestRecord,
    ensure_utc,
)
from lib.request_tracer.storage import normalize_group_by

logger = logging.getLogger(__name__)

# RequestRecord field -> column, where the names differ
ORDER_COLUMNS = {
    'requested_at': RequestLog.requested_at,
    'responded_at': RequestLog.responded_at,
    'latency': RequestLog.latency_ms,
    'total_tokens': RequestLog.total_tokens,
    'input_tokens': RequestLog.input_tokens,
    'output_tokens': RequestLog.output_tokens,
    'model': RequestLog.model_name,
    'provider': RequestLog.provider,
}

GROUP_COLUMNS = {
    'provider': RequestLog.provider,
    'model': RequestLog.model_name,
}


def to_naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


def from_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_to_record(row: RequestLog) -> RequestRecord:
    tags = sorted(row.dimensions, key=lambda t: (t.key, t.value))
    return RequestRecord(
        id=row.id,
        trace_id=row.trace_id,
        provider=Provider(row.provider),
        model=row.model_name,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        total_tokens=row.total_tokens,
        latency=timedelta(milliseconds=row.latency_ms or 0),
        status_code=row.status_code,
        error=row.error_message or '',
        error_type=ErrorType(row.error_type),
        dimensions=tuple(DimensionTag(key=t.key, value=t.value) for t in tags),
        requested_at=from_naive_utc(row.requested_at),
        responded_at=from_naive_utc(row.responded_at),
    )


class SQLAlchemyStorageAdapter:
    """
    Relational storage for request records.

    Usage:
        storage = SQLAlchemyStorageAdapter.from_url("postgresql://user:pass@db/tracer")
        client = TrackingClient(storage)
    """

    def __init__(self, engine: Engine):
        """The engine must already carry the tracking tables; see init_database()."""
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "SQLAlchemyStorageAdapter":
        return cls(init_database(database_url))

    # -- writes -------------------------------------------------------------

    def save(self, record: RequestRecord) -> None:
        try:
            self._save_once(record)
        except IntegrityError:
            # Another writer inserted the same dimension tag first; it exists now
            logger.debug(f"Retrying save of request {record.id} after dimension tag conflict")
            self._save_once(record)

    def _save_once(self, record: RequestRecord) -> None:
        db = self.SessionLocal()
        try:
            row = RequestLog(
                id=record.id,
                trace_id=record.trace_id,
                provider=record.provider.value,
                model_name=record.model,
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                total_tokens=record.total_tokens,
                latency_ms=record.latency_ms,
                status_code=record.status_code,
                error_message=record.error,
                error_type=record.error_type.value,
                requested_at=to_naive_utc(record.requested_at),
                responded_at=to_naive_utc(record.responded_at),
            )
            row.dimensions = [self._get_or_create_tag(db, tag) for tag in record.dimensions]
            db.add(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_or_create_tag(self, db: Session, tag: DimensionTag) -> DimensionTagRow:
        existing = db.query(DimensionTagRow).filter(
            and_(DimensionTagRow.key == tag.key, DimensionTagRow.value == tag.value)
        ).first()
        if existing:
            return existing
        created = DimensionTagRow(key=tag.key, value=tag.value)
        db.add(created)
        return created

    def delete(self, record_id: str) -> None:
        db = self.SessionLocal()
        try:
            row = db.query(RequestLog).filter(RequestLog.id == record_id).first()
            if row is None:
                raise RecordNotFoundError(f"Request record not found: {record_id}")
            db.delete(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_older_than(self, before: datetime) -> int:
        cutoff = to_naive_utc(before)
        expired_ids = select(RequestLog.id).where(RequestLog.requested_at < cutoff)

        db = self.SessionLocal()
        try:
            db.execute(delete(request_dimensions).where(request_dimensions.c.request_id.in_(expired_ids)))
            result = db.execute(delete(RequestLog).where(RequestLog.requested_at < cutoff))
            db.commit()
            deleted = result.rowcount or 0
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"Deleted {deleted} request records older than {cutoff.isoformat()}")
        return deleted

    # -- reads --------------------------------------------------------------

    def get(self, record_id: str) -> RequestRecord:
        db = self.SessionLocal()
        try:
            row = db.query(RequestLog).filter(RequestLog.id == record_id).first()
            if row is None:
                raise RecordNotFoundError(f"Request record not found: {record_id}")
            return row_to_record(row)
        finally:
            db.close()

    def get_by_trace_id(self, trace_id: str) -> List[RequestRecord]:
        return self.query(RequestFilter(trace_id=trace_id))

    def _apply_filter(self, query, f: RequestFilter):
        if f.trace_id:
            query = query.filter(RequestLog.trace_id == f.trace_id)
        if f.provider is not None:
            query = query.filter(RequestLog.provider == f.provider.value)
        if f.model:
            query = query.filter(RequestLog.model_name == f.model)
        if f.error_type is not None:
            query = query.filter(RequestLog.error_type == f.error_type.value)
        if f.start_time is not None:
            query = query.filter(RequestLog.requested_at >= to_naive_utc(f.start_time))
        if f.end_time is not None:
            query = query.filter(RequestLog.requested_at <= to_naive_utc(f.end_time))
        if f.min_tokens is not None:
            query = query.filter(RequestLog.total_tokens >= f.min_tokens)
        if f.max_tokens is not None:
            query = query.filter(RequestLog.total_tokens <= f.max_tokens)
        if f.has_error is True:
            query = query.filter(RequestLog.error_message != '')
        elif f.has_error is False:
            query = query.filter(RequestLog.error_message == '')

        for tag in f.dimensions:
            query = query.filter(RequestLog.dimensions.any(
                and_(DimensionTagRow.key == tag.key, DimensionTagRow.value == tag.value)
            ))

        return query

    def query(self, request_filter: Optional[RequestFilter] = None) -> List[RequestRecord]:
        f = request_filter or RequestFilter()

        db = self.SessionLocal()
        try:
            query = self._apply_filter(db.query(RequestLog), f)

            column = ORDER_COLUMNS[f.order_by]
            query = query.order_by(column.desc() if f.order_desc else column.asc(), RequestLog.id)

            if f.offset:
                query = query.offset(f.offset)
            if f.limit > 0:
                query = query.limit(f.limit)

            return [row_to_record(row) for row in query.all()]
        finally:
            db.close()

    def aggregate(
        self,
        group_by: Sequence[str],
        request_filter: Optional[RequestFilter] = None
    ) -> List[AggregateResult]:
        """
        Totals per group. Only provider and model can be grouped by; other
        names are ignored, and no group fields yields a single overall row.
        """
        fields = normalize_group_by(group_by)
        group_columns = [GROUP_COLUMNS[name].label(name) for name in fields]

        db = self.SessionLocal()
        try:
            query = db.query(
                *group_columns,
                func.count(RequestLog.id).label('total_requests'),
                func.sum(RequestLog.total_tokens).label('total_tokens'),
                func.avg(RequestLog.latency_ms).label('avg_latency_ms'),
                func.sum(case((RequestLog.error_message != '', 1), else_=0)).label('error_count')
            )
            query = self._apply_filter(query, request_filter or RequestFilter())
            if fields:
                query = query.group_by(*[GROUP_COLUMNS[name] for name in fields])
                query = query.order_by(*[GROUP_COLUMNS[name] for name in fields])

            results = []
            for row in query.all():
                values = row._mapping
                results.append(AggregateResult(
                    provider=Provider(values['provider']) if 'provider' in fields else None,
                    model=values['model'] if 'model' in fields else None,
                    total_requests=values['total_requests'] or 0,
                    total_tokens=values['total_tokens'] or 0,
                    avg_latency=timedelta(milliseconds=float(values['avg_latency_ms'] or 0)),
                    error_count=values['error_count'] or 0,
                ))
            return results
        finally:
            db.close()

    def close(self) -> None:
        self.engine.dispose()
