"""Database package."""

from audit_chain.db.models import AppendOnlyViolation, AuditEventRecord, Base
from audit_chain.db.session import (
    close_db,
    get_session_factory,
    init_db,
)

__all__ = [
    "init_db",
    "close_db",
    "get_session_factory",
    "Base",
    "AuditEventRecord",
    "AppendOnlyViolation",
]
