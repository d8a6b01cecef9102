"""
Trust Module

Capability issuance: scope registry, grant storage and the issuer that mints,
validates and revokes time-boxed grants.
"""

from .grant_store import GrantKey, GrantStore, InMemoryGrantStore
from .issuer import MAX_DURATION_MINUTES, MIN_DURATION_MINUTES, CapabilityIssuer, Grant
from .scopes import (
    DEPLOYMENT_SCOPES,
    KNOWN_SCOPES,
    RECOVERY_SCOPES,
    SCOPE_OPERATIONS,
    Scope,
    is_scope_known,
    operations_for_scopes,
)

__all__ = [
    "CapabilityIssuer",
    "Grant",
    "MIN_DURATION_MINUTES",
    "MAX_DURATION_MINUTES",
    # Store
    "GrantKey",
    "GrantStore",
    "InMemoryGrantStore",
    # Scopes
    "Scope",
    "SCOPE_OPERATIONS",
    "KNOWN_SCOPES",
    "DEPLOYMENT_SCOPES",
    "RECOVERY_SCOPES",
    "is_scope_known",
    "operations_for_scopes",
]
