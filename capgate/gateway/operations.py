"""
Operation Registry

Single source of truth for the operations the gateway accepts, the grant
permission each one needs, and the shape of its parameters.

INVARIANTS:
- If an operation isn't in OPERATION_REGISTRY, it doesn't exist.
- Unknown parameters are rejected, not ignored.
- executeCommand takes exactly one of ``command`` (free-form string, policy
  checked) or ``argv`` (structured, recommended).

Also holds the wire contracts crossing the gateway boundary: SessionContext,
OperationRequest and OperationResult.
"""

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from capgate.errors import InvalidOperationSchema
from capgate.trust.scopes import (
    OP_BRANCH,
    OP_CLONE,
    OP_COMMIT,
    OP_CREATE_CONTAINER,
    OP_EXECUTE_COMMAND,
    OP_GET_LOGS,
    OP_GET_STATUS,
    OP_PULL,
    OP_PUSH,
    OP_STATUS,
    OP_STOP_CONTAINER,
)

BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\-_/]+$")


class OperationName(str, Enum):
    """Operations a subject may request through the gateway."""

    CREATE_CONTAINER = "createContainer"
    EXECUTE_COMMAND = "executeCommand"
    GET_STATUS = "getStatus"
    GET_LOGS = "getLogs"
    STOP_CONTAINER = "stopContainer"
    GIT_CLONE = "gitClone"
    GIT_PULL = "gitPull"
    GIT_COMMIT = "gitCommit"
    GIT_PUSH = "gitPush"
    GIT_BRANCH = "gitBranch"
    GIT_STATUS = "gitStatus"


@dataclass(frozen=True)
class OperationSpec:
    """
    Declared contract for an operation.

    Attributes:
        name: Canonical operation name (e.g., "gitClone")
        permission: Entry a grant's allowed_operations must contain
        allowed_fields: All valid parameter names
        required_fields: Mandatory parameters (subset of allowed)
        field_types: Accepted Python types per parameter
        is_git: Runs as a git command inside the workspace
    """

    name: str
    permission: str
    allowed_fields: FrozenSet[str]
    required_fields: FrozenSet[str] = frozenset()
    field_types: Dict[str, Tuple[type, ...]] = field(default_factory=dict)
    is_git: bool = False
    description: str = ""


_NUMBER = (int, float)


# =============================================================================
# THE REGISTRY
# =============================================================================

OPERATION_REGISTRY: Dict[str, OperationSpec] = {
    OperationName.CREATE_CONTAINER.value: OperationSpec(
        name=OperationName.CREATE_CONTAINER.value,
        permission=OP_CREATE_CONTAINER,
        allowed_fields=frozenset({"image", "template", "cpu", "memory_gb", "environment_variables"}),
        field_types={
            "image": (str,),
            "template": (str,),
            "cpu": _NUMBER,
            "memory_gb": _NUMBER,
            "environment_variables": (dict,),
        },
        description="Provision the compute resource for the grant's resource",
    ),
    OperationName.EXECUTE_COMMAND.value: OperationSpec(
        name=OperationName.EXECUTE_COMMAND.value,
        permission=OP_EXECUTE_COMMAND,
        allowed_fields=frozenset({"command", "argv", "timeout_ms", "cwd"}),
        field_types={
            "command": (str,),
            "argv": (list, tuple),
            "timeout_ms": (int,),
            "cwd": (str,),
        },
        description="Run a policy-checked command in the compute resource",
    ),
    OperationName.GET_STATUS.value: OperationSpec(
        name=OperationName.GET_STATUS.value,
        permission=OP_GET_STATUS,
        allowed_fields=frozenset(),
        description="Report the compute resource state",
    ),
    OperationName.GET_LOGS.value: OperationSpec(
        name=OperationName.GET_LOGS.value,
        permission=OP_GET_LOGS,
        allowed_fields=frozenset({"tail"}),
        field_types={"tail": (int,)},
        description="Fetch recent compute resource logs",
    ),
    OperationName.STOP_CONTAINER.value: OperationSpec(
        name=OperationName.STOP_CONTAINER.value,
        permission=OP_STOP_CONTAINER,
        allowed_fields=frozenset(),
        description="Stop the compute resource",
    ),
    OperationName.GIT_CLONE.value: OperationSpec(
        name=OperationName.GIT_CLONE.value,
        permission=OP_CLONE,
        allowed_fields=frozenset({"repository", "branch"}),
        required_fields=frozenset({"repository"}),
        field_types={"repository": (str,), "branch": (str,)},
        is_git=True,
        description="Clone a trusted repository into the workspace",
    ),
    OperationName.GIT_PULL.value: OperationSpec(
        name=OperationName.GIT_PULL.value,
        permission=OP_PULL,
        allowed_fields=frozenset({"branch"}),
        field_types={"branch": (str,)},
        is_git=True,
        description="Pull the latest changes",
    ),
    OperationName.GIT_COMMIT.value: OperationSpec(
        name=OperationName.GIT_COMMIT.value,
        permission=OP_COMMIT,
        allowed_fields=frozenset({"message"}),
        required_fields=frozenset({"message"}),
        field_types={"message": (str,)},
        is_git=True,
        description="Stage all changes and commit",
    ),
    OperationName.GIT_PUSH.value: OperationSpec(
        name=OperationName.GIT_PUSH.value,
        permission=OP_PUSH,
        allowed_fields=frozenset({"branch"}),
        field_types={"branch": (str,)},
        is_git=True,
        description="Push commits to origin",
    ),
    OperationName.GIT_BRANCH.value: OperationSpec(
        name=OperationName.GIT_BRANCH.value,
        permission=OP_BRANCH,
        allowed_fields=frozenset({"name"}),
        required_fields=frozenset({"name"}),
        field_types={"name": (str,)},
        is_git=True,
        description="Create and switch to a new branch",
    ),
    OperationName.GIT_STATUS.value: OperationSpec(
        name=OperationName.GIT_STATUS.value,
        permission=OP_STATUS,
        allowed_fields=frozenset(),
        is_git=True,
        description="Show working tree status",
    ),
}


# =============================================================================
# Registry Access Functions
# =============================================================================


def get_operation_spec(operation: str) -> OperationSpec:
    """
    Get spec for an operation.

    Raises:
        InvalidOperationSchema: If operation not in registry
    """
    spec = OPERATION_REGISTRY.get(operation)
    if spec is None:
        raise InvalidOperationSchema(f"Unknown operation: {operation}")
    return spec


def is_operation_known(operation: str) -> bool:
    return operation in OPERATION_REGISTRY


def list_operations() -> List[str]:
    return list(OPERATION_REGISTRY.keys())


def validate_operation_parameters(operation: str, parameters: Dict[str, Any]) -> OperationSpec:
    """
    Validate parameters against the operation's schema.

    Raises:
        InvalidOperationSchema: If the operation is unknown or the parameters
            are missing, unexpected, mistyped or malformed.
    """
    spec = get_operation_spec(operation)

    if not isinstance(parameters, dict):
        raise InvalidOperationSchema(f"Parameters for {operation} must be an object")

    unknown = set(parameters.keys()) - spec.allowed_fields
    if unknown:
        raise InvalidOperationSchema(f"Unknown fields for {operation}: {sorted(unknown)}")

    missing = spec.required_fields - set(parameters.keys())
    if missing:
        raise InvalidOperationSchema(f"Missing required fields for {operation}: {sorted(missing)}")

    for name, value in parameters.items():
        expected = spec.field_types.get(name)
        # bool is an int subclass; never a valid number here
        if expected and (isinstance(value, bool) or not isinstance(value, expected)):
            raise InvalidOperationSchema(f"Field '{name}' for {operation} has invalid type")

    for name in spec.required_fields:
        value = parameters[name]
        if isinstance(value, str) and not value.strip():
            raise InvalidOperationSchema(f"Field '{name}' for {operation} must not be empty")

    if operation == OperationName.EXECUTE_COMMAND.value:
        _validate_command_shape(parameters)

    if operation == OperationName.GIT_BRANCH.value:
        if not BRANCH_NAME_PATTERN.match(parameters["name"]):
            raise InvalidOperationSchema("Invalid branch name")

    branch = parameters.get("branch")
    if branch is not None and not BRANCH_NAME_PATTERN.match(branch):
        raise InvalidOperationSchema("Invalid branch name")

    for name in ("timeout_ms", "tail"):
        if name in parameters and parameters[name] <= 0:
            raise InvalidOperationSchema(f"Field '{name}' for {operation} must be positive")

    return spec


def _validate_command_shape(parameters: Dict[str, Any]) -> None:
    has_command = "command" in parameters
    has_argv = "argv" in parameters
    if has_command == has_argv:
        raise InvalidOperationSchema("executeCommand requires exactly one of 'command' or 'argv'")

    if has_command and not parameters["command"].strip():
        raise InvalidOperationSchema("Command must not be empty")

    if has_argv:
        argv = parameters["argv"]
        if not argv or not all(isinstance(arg, str) for arg in argv):
            raise InvalidOperationSchema("argv must be a non-empty list of strings")
        if not argv[0]:
            raise InvalidOperationSchema("argv executable must not be empty")


# =============================================================================
# Wire contracts
# =============================================================================


class SessionContext(BaseModel):
    """Credentials a subject presents with every operation."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    subject_id: str = Field(..., min_length=1, max_length=100)
    resource_id: str = Field(..., min_length=1, max_length=100)
    task_id: str = Field(..., min_length=1, max_length=100)
    session_secret: str = Field(..., min_length=32, repr=False)


class OperationRequest(BaseModel):
    """An operation plus its parameters, validated against the registry at dispatch."""
    model_config = ConfigDict(extra="forbid")

    operation: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


def new_operation_id() -> str:
    return secrets.token_hex(16)


class OperationResult(BaseModel):
    """Outcome of a gateway call. Failures are data, not exceptions."""
    model_config = ConfigDict(frozen=True)

    success: bool
    operation: str
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    operation_id: str = Field(default_factory=new_operation_id)
    timestamp: datetime = Field(default_factory=datetime.now)
