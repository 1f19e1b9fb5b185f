from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Creates an engine for the given URL.

    In-memory SQLite gets a single shared connection so every session and
    thread sees the same database.
    """
    if database_url.startswith('sqlite'):
        connect_args = {"check_same_thread": False}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url, pool_pre_ping=True)


def init_database(database_url: str) -> Engine:
    """
    Initializes the database connection and creates the tracking tables.
    """
    # Register the ORM tables on Base before create_all
    from api.models import request_tracking  # noqa: F401

    engine = build_engine(database_url)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
    return engine
