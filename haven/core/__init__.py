"""
Haven core: identity, session lifecycle, record store, service results.
"""

from haven.core.identity import AuthSession, Identity, IdentityResolver, InMemorySessionProvider
from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext, SessionManager, SessionState
from haven.core.store import Query, RecordStore, SQLRecordStore, create_store

__all__ = [
    "AuthSession",
    "Identity",
    "IdentityResolver",
    "InMemorySessionProvider",
    "PrincipalContext",
    "Query",
    "RecordStore",
    "SQLRecordStore",
    "ServiceResult",
    "SessionManager",
    "SessionState",
    "create_store",
]
