"""
Workflow Model

State machine:
    pending → running → completed | failed | cancelled

INVARIANTS:
    - Terminal states are absorbing: nothing on a terminal workflow changes
    - Steps run strictly in table order; step N+1 never starts before N ends
    - Each workflow owns private Step copies built from DEPLOYMENT_STEPS
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

from capgate.errors import WorkflowStateError


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Terminal states - no outgoing transitions
TERMINAL_STATES: Set[WorkflowStatus] = {
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
}

ALLOWED_TRANSITIONS: Dict[WorkflowStatus, Set[WorkflowStatus]] = {
    WorkflowStatus.PENDING: {
        WorkflowStatus.RUNNING,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.RUNNING: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}


# =============================================================================
# Step table
# =============================================================================


@dataclass(frozen=True)
class StepDefinition:
    """Canonical step. Non-fatal steps record failure and continue."""
    id: str
    name: str
    description: str
    fatal: bool = True


DEPLOYMENT_STEPS: List[StepDefinition] = [
    StepDefinition("acquire-grant", "Acquire Grant", "Mint the deployment grant"),
    StepDefinition("create-compute-resource", "Create Compute Resource", "Provision the build container"),
    StepDefinition("fetch-or-init-source", "Fetch Source", "Clone the repository or initialise an empty one"),
    StepDefinition("install-dependencies", "Install Dependencies", "Install project dependencies"),
    StepDefinition("generate-or-modify-code", "Generate/Modify Code", "Apply generated code to the workspace"),
    StepDefinition("run-tests", "Run Tests", "Run the project test suite", fatal=False),
    StepDefinition("build", "Build Application", "Build the application"),
    StepDefinition("extract-artifacts", "Extract Build Artifacts", "Archive the build output"),
    StepDefinition("start-application", "Start Application", "Start the application in the container"),
    StepDefinition("verify-application", "Verify Application", "Confirm the compute resource is healthy"),
    StepDefinition("cleanup", "Cleanup Resources", "Stop the compute resource and revoke the grant"),
]

STEP_IDS: List[str] = [s.id for s in DEPLOYMENT_STEPS]


# =============================================================================
# Records
# =============================================================================


@dataclass
class Step:
    id: str
    name: str
    description: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    fatal: bool = True

    @classmethod
    def from_definition(cls, definition: StepDefinition) -> "Step":
        return cls(
            id=definition.id,
            name=definition.name,
            description=definition.description,
            fatal=definition.fatal,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
        }


@dataclass
class Workflow:
    """One deployment attempt."""
    id: str
    subject_id: str
    resource_id: str
    project_name: str
    template: str
    steps: List[Step]
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step_index: int = 0
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    artifacts: Optional[Dict[str, str]] = None
    container_ref: Optional[str] = None
    deployment_url: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def transition(self, to_status: WorkflowStatus) -> None:
        """
        Move to ``to_status``.

        Raises:
            WorkflowStateError: If the transition is not allowed
        """
        if to_status not in ALLOWED_TRANSITIONS[self.status]:
            raise WorkflowStateError(
                f"Invalid transition for workflow {self.id}: {self.status.value} → {to_status.value}"
            )
        self.status = to_status
        if to_status in TERMINAL_STATES:
            self.end_time = datetime.now()

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "resource_id": self.resource_id,
            "project_name": self.project_name,
            "template": self.template,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "current_step_index": self.current_step_index,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "artifacts": self.artifacts,
            "container_ref": self.container_ref,
            "deployment_url": self.deployment_url,
        }


# =============================================================================
# Request
# =============================================================================

Template = Literal["node", "python", "dotnet", "java", "go"]


class DeploymentRequest(BaseModel):
    """Input to start_deployment."""
    model_config = ConfigDict(extra="forbid")

    subject_id: str = Field(..., min_length=1, max_length=100)
    project_name: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    template: Template = "node"
    source_repo: Optional[str] = None
    build_command: Optional[str] = None
    output_path: Optional[str] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)

    @field_validator("output_path")
    @classmethod
    def _relative_output_path(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parts = value.split()
        if not parts or any(p.startswith("/") or ".." in p.split("/") for p in parts):
            raise ValueError("output_path must be relative paths inside the workspace")
        if not re.fullmatch(r"[A-Za-z0-9._/ -]+", value):
            raise ValueError("output_path contains invalid characters")
        return value

    @field_validator("build_command")
    @classmethod
    def _non_empty_command(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("build_command must not be empty")
        return value
