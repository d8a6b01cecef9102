"""
Gateway Module

Authorization gateway in front of the shared compute backend: operation
registry, command policy, backend interface and cleanup bookkeeping.
"""

from .backend import CommandOutput, ComputeBackend, ContainerInfo, ContainerSpec, InMemoryComputeBackend
from .cleanup import CleanupManager, CleanupReport, CleanupTask
from .gateway import INVALID_SESSION, AuthorizationGateway, derive_container_name
from .operations import (
    OPERATION_REGISTRY,
    OperationName,
    OperationRequest,
    OperationResult,
    OperationSpec,
    SessionContext,
    get_operation_spec,
    validate_operation_parameters,
)
from .policy import CommandPolicy, PolicyDecision, sanitize_argument, workspace_path

__all__ = [
    "AuthorizationGateway",
    "INVALID_SESSION",
    "derive_container_name",
    # Operations
    "OPERATION_REGISTRY",
    "OperationName",
    "OperationSpec",
    "OperationRequest",
    "OperationResult",
    "SessionContext",
    "get_operation_spec",
    "validate_operation_parameters",
    # Policy
    "CommandPolicy",
    "PolicyDecision",
    "sanitize_argument",
    "workspace_path",
    # Backend
    "ComputeBackend",
    "InMemoryComputeBackend",
    "ContainerSpec",
    "ContainerInfo",
    "CommandOutput",
    # Cleanup
    "CleanupManager",
    "CleanupTask",
    "CleanupReport",
]
