"""
SQLAlchemy models for LLM request tracking tables
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Text, ForeignKey, Table, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from .database import Base

# Many-to-many link between requests and their dimension tags
request_dimensions = Table(
    'request_dimensions',
    Base.metadata,
    Column('request_id', String(36), ForeignKey('llm_requests.id', ondelete='CASCADE'), primary_key=True),
    Column('dimension_tag_id', Integer, ForeignKey('dimension_tags.id', ondelete='CASCADE'), primary_key=True),
)


class RequestLog(Base):
    __tablename__ = 'llm_requests'

    id = Column(String(36), primary_key=True)
    trace_id = Column(String(255), nullable=False, index=True)

    provider = Column(String(50), nullable=False)      # 'openai', 'anthropic', 'google', 'mistral'
    model_name = Column(String(255), nullable=False)

    # Token usage
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)

    # Performance and outcome
    latency_ms = Column(Float, nullable=False, default=0.0)
    status_code = Column(Integer, nullable=False, default=200)
    error_message = Column(Text, nullable=False, default='')
    error_type = Column(String(50), nullable=False, default='none')

    # Stored as naive UTC
    requested_at = Column(DateTime, nullable=False)
    responded_at = Column(DateTime, nullable=False)

    dimensions = relationship(
        "DimensionTagRow",
        secondary=request_dimensions,
        back_populates="requests",
        lazy="selectin",
    )

    __table_args__ = (
        Index('idx_llm_requests_requested_at', 'requested_at'),
        Index('idx_llm_requests_provider_model', 'provider', 'model_name'),
        Index('idx_llm_requests_error_type', 'error_type'),
    )


class DimensionTagRow(Base):
    __tablename__ = 'dimension_tags'

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    value = Column(String(255), nullable=False)

    requests = relationship(
        "RequestLog",
        secondary=request_dimensions,
        back_populates="dimensions",
    )

    __table_args__ = (
        UniqueConstraint('key', 'value', name='uq_dimension_tags_key_value'),
    )
