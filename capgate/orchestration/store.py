"""
Workflow Store Abstraction

Holds workflow records for the orchestrator, which is the only writer.
Records live only as long as the process.

INVARIANTS:
- Workflow ids are unique; insert never overwrites
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .workflow import Workflow

logger = logging.getLogger(__name__)


class WorkflowStore(ABC):
    """Abstract store for workflow records."""

    @abstractmethod
    def insert(self, workflow: Workflow) -> None:
        """Insert a new workflow. Raises ValueError if the id exists."""
        pass

    @abstractmethod
    def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by id. Returns None if not found."""
        pass

    @abstractmethod
    def list_workflows(self, subject_id: Optional[str] = None) -> List[Workflow]:
        """All workflows, oldest first, optionally for one subject."""
        pass


class InMemoryWorkflowStore(WorkflowStore):
    """Dict-backed store."""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}

    def insert(self, workflow: Workflow) -> None:
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow already exists: {workflow.id}")
        self._workflows[workflow.id] = workflow
        logger.debug(f"Stored workflow {workflow.id}")

    def get(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    def list_workflows(self, subject_id: Optional[str] = None) -> List[Workflow]:
        workflows = sorted(self._workflows.values(), key=lambda w: w.start_time)
        if subject_id is not None:
            workflows = [w for w in workflows if w.subject_id == subject_id]
        return workflows

    def __len__(self) -> int:
        return len(self._workflows)
