"""
Database module for the NPHIES Communication Workflow.

Exports database connection utilities.
"""

from src.db.connection import (
    check_db_connection,
    close_db_connection,
    create_tables,
    get_engine,
    get_session_maker,
)

__all__ = [
    "get_engine",
    "get_session_maker",
    "create_tables",
    "close_db_connection",
    "check_db_connection",
]
