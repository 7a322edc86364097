"""
Database Module
"""
from .connection import (
    build_engine,
    close_database,
    create_schema,
    create_session_factory,
    get_db,
    get_session_factory,
    init_database,
)
from .models import Base
from .repository import Repository, created_between, in_set

__all__ = [
    "build_engine",
    "create_schema",
    "create_session_factory",
    "init_database",
    "close_database",
    "get_db",
    "get_session_factory",
    "Base",
    "Repository",
    "created_between",
    "in_set",
]
