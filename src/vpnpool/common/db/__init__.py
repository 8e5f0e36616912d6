"""
Database utilities package.
"""
from vpnpool.common.db.models import Base
from vpnpool.common.db.connection import (
    get_engine,
    get_session_factory,
    get_scoped_session,
    make_session,
    transaction,
)

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "get_scoped_session",
    "make_session",
    "transaction",
]
