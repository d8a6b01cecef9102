"""
v1 API Contracts
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from capgate.gateway.operations import OperationResult


class RoleEnum(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"


class GrantRequestV1(BaseModel):
    """Request payload for minting a grant for the caller."""
    model_config = ConfigDict(extra="forbid")

    resource_id: str = Field(..., min_length=1, max_length=100)
    task_id: str = Field(..., min_length=1, max_length=100)
    scopes: List[str]
    duration_minutes: int


class GrantResponseV1(BaseModel):
    """A freshly minted grant. The only response that ever carries the secret."""
    model_config = ConfigDict(extra="forbid")

    contract_version: Literal["v1"] = "v1"
    subject_id: str
    resource_id: str
    task_id: str
    session_secret: str
    scopes: List[str]
    allowed_operations: List[str]
    created_at: str
    expires_at: str


class RevokeResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contract_version: Literal["v1"] = "v1"
    revoked: bool


class OperationRequestV1(BaseModel):
    """An operation against a grant held by the caller."""
    model_config = ConfigDict(extra="forbid")

    resource_id: str
    task_id: str
    session_secret: str
    operation: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class OperationResultV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    operation: str
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    operation_id: str
    timestamp: datetime

    @classmethod
    def from_result(cls, result: OperationResult) -> "OperationResultV1":
        return cls(**result.model_dump())


class OperationHistoryV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contract_version: Literal["v1"] = "v1"
    subject_id: str
    items: List[OperationResultV1]


class DeploymentRequestV1(BaseModel):
    """Deployment for the caller; the subject comes from the auth context."""
    model_config = ConfigDict(extra="forbid")

    project_name: str
    template: str = "node"
    source_repo: Optional[str] = None
    build_command: Optional[str] = None
    output_path: Optional[str] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)


class DeploymentAcceptedV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contract_version: Literal["v1"] = "v1"
    workflow_id: str
    status: str


class DeploymentV1(BaseModel):
    """Workflow snapshot plus the recovery outcome, if any."""
    model_config = ConfigDict(extra="forbid")

    contract_version: Literal["v1"] = "v1"
    workflow: Dict[str, Any]
    recovery: Optional[Dict[str, Any]] = None
