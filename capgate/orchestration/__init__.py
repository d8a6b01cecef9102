"""
Orchestration Module

Deployment workflows: step table and state machine, event bus, workflow
store and the orchestrator that drives steps through the gateway.
"""

from .events import EventBus, EventStream, WorkflowEvent, WorkflowEventType
from .orchestrator import DeploymentOrchestrator, classify_failure, recovery_task_id
from .store import InMemoryWorkflowStore, WorkflowStore
from .templates import TEMPLATE_COMMANDS, TemplateCommands, get_template
from .workflow import (
    ALLOWED_TRANSITIONS,
    DEPLOYMENT_STEPS,
    STEP_IDS,
    TERMINAL_STATES,
    DeploymentRequest,
    Step,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowStatus,
)

__all__ = [
    "DeploymentOrchestrator",
    "classify_failure",
    "recovery_task_id",
    # Model
    "DeploymentRequest",
    "Workflow",
    "WorkflowStatus",
    "Step",
    "StepStatus",
    "StepDefinition",
    "DEPLOYMENT_STEPS",
    "STEP_IDS",
    "TERMINAL_STATES",
    "ALLOWED_TRANSITIONS",
    # Events
    "EventBus",
    "EventStream",
    "WorkflowEvent",
    "WorkflowEventType",
    # Store
    "WorkflowStore",
    "InMemoryWorkflowStore",
    # Templates
    "TEMPLATE_COMMANDS",
    "TemplateCommands",
    "get_template",
]
