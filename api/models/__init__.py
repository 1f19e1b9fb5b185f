#!/usr/bin/env python

from .database import Base, init_database, build_engine
from .request_tracking import RequestLog, DimensionTagRow, request_dimensions

__all__ = [
    "Base",
    "RequestLog",
    "DimensionTagRow",
    "request_dimensions",
    "init_database",
    "build_engine",
]
