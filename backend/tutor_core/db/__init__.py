"""Database package for the tutor core."""

from .base import (
    Base,
    build_engine,
    close_all,
    get_engine,
    get_session_maker,
    init_database,
)

__all__ = [
    "Base",
    "build_engine",
    "close_all",
    "get_engine",
    "get_session_maker",
    "init_database",
]
