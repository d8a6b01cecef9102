"""
Scope Registry

Single source of truth for the abstract scopes a grant may request and the
concrete operation names each scope unlocks.

INVARIANTS:
- If a scope isn't in SCOPE_OPERATIONS, it doesn't exist.
- A grant's allowed operations are exactly the union of the mapped sets of
  its requested scopes: never more, never less.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class Scope(str, Enum):
    """Abstract permissions a subject may request."""

    CONTAINER_CREATE = "container:create"
    CONTAINER_EXECUTE = "container:execute"
    CONTAINER_READ = "container:read"
    CONTAINER_STOP = "container:stop"
    GIT_READ = "git:read"
    GIT_WRITE = "git:write"
    BUILD_EXECUTE = "build:execute"
    DEPLOY_EXECUTE = "deploy:execute"


# Concrete operation names carried by a grant
OP_CREATE_CONTAINER = "createContainer"
OP_EXECUTE_COMMAND = "executeCommand"
OP_GET_STATUS = "getStatus"
OP_GET_LOGS = "getLogs"
OP_STOP_CONTAINER = "stopContainer"
OP_CLONE = "clone"
OP_PULL = "pull"
OP_STATUS = "status"
OP_COMMIT = "commit"
OP_PUSH = "push"
OP_BRANCH = "branch"


# =============================================================================
# THE REGISTRY
# =============================================================================

SCOPE_OPERATIONS: Dict[str, FrozenSet[str]] = {
    Scope.CONTAINER_CREATE.value: frozenset({OP_CREATE_CONTAINER}),
    Scope.CONTAINER_EXECUTE.value: frozenset({OP_EXECUTE_COMMAND}),
    Scope.CONTAINER_READ.value: frozenset({OP_GET_STATUS, OP_GET_LOGS}),
    Scope.CONTAINER_STOP.value: frozenset({OP_STOP_CONTAINER}),
    Scope.GIT_READ.value: frozenset({OP_CLONE, OP_PULL, OP_STATUS}),
    Scope.GIT_WRITE.value: frozenset({OP_COMMIT, OP_PUSH, OP_BRANCH}),
    Scope.BUILD_EXECUTE.value: frozenset({OP_EXECUTE_COMMAND}),
    Scope.DEPLOY_EXECUTE.value: frozenset({OP_EXECUTE_COMMAND}),
}

KNOWN_SCOPES: FrozenSet[str] = frozenset(SCOPE_OPERATIONS)

# Everything a full deployment needs
DEPLOYMENT_SCOPES: FrozenSet[str] = KNOWN_SCOPES

# Least privilege for failure recovery: inspect, run diagnostics, stop
RECOVERY_SCOPES: FrozenSet[str] = frozenset({
    Scope.CONTAINER_READ.value,
    Scope.CONTAINER_EXECUTE.value,
    Scope.CONTAINER_STOP.value,
})


# =============================================================================
# Registry Access Functions
# =============================================================================


def normalize_scope(scope) -> str:
    """Accept a Scope member or its string value."""
    if isinstance(scope, Scope):
        return scope.value
    return scope


def is_scope_known(scope) -> bool:
    """Check if a scope exists in the registry."""
    return normalize_scope(scope) in KNOWN_SCOPES


def operations_for_scopes(scopes: Iterable) -> FrozenSet[str]:
    """
    Map requested scopes to the set of allowed operation names.

    Raises:
        KeyError: If a scope is not in the registry
    """
    allowed = set()
    for scope in scopes:
        allowed |= SCOPE_OPERATIONS[normalize_scope(scope)]
    return frozenset(allowed)
