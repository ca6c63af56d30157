"""Database package."""

from roster_control.db.models import (
    AuditRecord,
    AuditSeverity,
    Base,
    EntrySource,
    GrantType,
    IdentityLink,
    LinkSource,
    WhitelistEntry,
)
from roster_control.db.session import (
    close_db,
    create_schema,
    get_background_session,
    get_session_factory,
    init_db,
)

__all__ = [
    "init_db",
    "close_db",
    "create_schema",
    "get_session_factory",
    "get_background_session",
    "Base",
    "IdentityLink",
    "LinkSource",
    "WhitelistEntry",
    "EntrySource",
    "GrantType",
    "AuditRecord",
    "AuditSeverity",
]
