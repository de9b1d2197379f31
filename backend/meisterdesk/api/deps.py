"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication, and entitlement dependencies so
that router modules can import everything they need from one place::

    from meisterdesk.api.deps import get_db, get_current_account
"""

from meisterdesk.auth.dependencies import get_current_account, get_stream_account
from meisterdesk.billing.dependencies import (
    get_adapter_factory,
    get_current_entitlement,
    get_entitlement_service,
    require_feature,
)
from meisterdesk.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_account",
    "get_stream_account",
    "get_current_entitlement",
    "get_entitlement_service",
    "get_adapter_factory",
    "require_feature",
]
