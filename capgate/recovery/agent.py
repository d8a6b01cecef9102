"""
Failure Recovery Agent

Activated only after a workflow has failed. Diagnoses the failure, picks a
recovery strategy and runs its steps through the gateway with a narrow,
short-lived recovery grant (read, execute, stop; never create).

Strategy selection:
    "Permission denied" / permission failures -> none (manual intervention)
    more than MAX_FAILURE_ATTEMPTS attempts   -> none (manual intervention)
    "Container not found"                     -> container-missing
    "npm ERR!"                                -> npm-error
    git failures                              -> git-error
    timeouts                                  -> timeout
    anything else                             -> generic

Recovery is diagnostic: it never moves the failed workflow back to running.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from capgate.gateway.operations import OperationResult, SessionContext
from capgate.gateway.policy import workspace_path

logger = logging.getLogger(__name__)

MAX_FAILURE_ATTEMPTS = 3


class FailureType(str, Enum):
    GIT = "git"
    BUILD = "build"
    DEPLOY = "deploy"
    CONTAINER = "container"
    TIMEOUT = "timeout"
    PERMISSION = "permission"


# =============================================================================
# Contracts
# =============================================================================


class FailureDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: FailureType
    operation: str
    error: str
    timestamp: datetime = Field(default_factory=datetime.now)
    attempts: int = Field(default=1, ge=0)


class FailureHistoryEntry(BaseModel):
    operation: str
    result: bool
    timestamp: datetime


class FailureEvent(BaseModel):
    """A terminal workflow failure, with the recovery grant's credentials."""
    model_config = ConfigDict(extra="forbid")

    context: SessionContext
    failure: FailureDetails
    history: Optional[List[FailureHistoryEntry]] = None


class RecoveryResult(BaseModel):
    success: bool
    strategy_used: Optional[str] = None
    steps_executed: int = 0
    resolution: Optional[str] = None
    error: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)


class FailureRecovery(ABC):
    """Interface the orchestrator delegates failures to."""

    @abstractmethod
    async def handle_failure(self, event: FailureEvent) -> RecoveryResult:
        """Attempt recovery. Must not raise."""


# =============================================================================
# Strategies
# =============================================================================


@dataclass(frozen=True)
class RecoveryStep:
    action: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    fallback: Optional[str] = None
    # argv run as executeCommand after the step; must succeed
    validation: Optional[List[str]] = None


@dataclass(frozen=True)
class RecoveryStrategy:
    key: str
    name: str
    description: str
    steps: List[RecoveryStep]
    max_attempts: int = 2


RECOVERY_STRATEGIES: Dict[str, RecoveryStrategy] = {
    "git-error": RecoveryStrategy(
        key="git-error",
        name="Git Recovery",
        description="Inspect the resource and check repository reachability",
        steps=[
            RecoveryStep("check-status"),
            RecoveryStep("check-connectivity", fallback="collect-logs"),
        ],
        max_attempts=3,
    ),
    "npm-error": RecoveryStrategy(
        key="npm-error",
        name="NPM Recovery",
        description="Clear the package cache after a dependency failure",
        steps=[
            RecoveryStep("clear-npm-cache", validation=["npm", "--version"]),
            RecoveryStep("wait", {"duration_ms": 3000}),
        ],
        max_attempts=3,
    ),
    "container-missing": RecoveryStrategy(
        key="container-missing",
        name="Container Recovery",
        description="Wait for the resource and confirm its state",
        steps=[
            RecoveryStep("wait", {"duration_ms": 5000}),
            RecoveryStep("check-status"),
        ],
    ),
    "timeout": RecoveryStrategy(
        key="timeout",
        name="Timeout Recovery",
        description="Collect diagnostics and stop the stalled resource",
        steps=[
            RecoveryStep("collect-logs", {"tail": 200}),
            RecoveryStep("stop-container"),
        ],
    ),
    "generic": RecoveryStrategy(
        key="generic",
        name="Generic Recovery",
        description="Collect diagnostics",
        steps=[
            RecoveryStep("collect-logs", {"tail": 100}),
            RecoveryStep("check-status", fallback="collect-logs"),
        ],
    ),
}


def select_strategy(event: FailureEvent) -> Optional[RecoveryStrategy]:
    """Pick a strategy for the failure, or None when a human must step in."""
    failure = event.failure

    if failure.type == FailureType.PERMISSION or "Permission denied" in failure.error:
        return None

    if failure.attempts > MAX_FAILURE_ATTEMPTS:
        logger.warning(
            f"Too many attempts ({failure.attempts}) for {event.context.resource_id}, "
            "recommending manual intervention"
        )
        return None

    if "Container not found" in failure.error:
        key = "container-missing"
    elif "npm ERR!" in failure.error:
        key = "npm-error"
    elif failure.type == FailureType.GIT:
        key = "git-error"
    else:
        key = failure.type.value

    return RECOVERY_STRATEGIES.get(key) or RECOVERY_STRATEGIES["generic"]


MANUAL_RECOMMENDATIONS: Dict[FailureType, List[str]] = {
    FailureType.PERMISSION: [
        "Check the subject's grants for the resource",
        "Verify the repository credentials have the necessary scopes",
    ],
    FailureType.GIT: [
        "Verify the repository exists and is accessible",
        "Check if branch protection rules are blocking operations",
    ],
    FailureType.BUILD: [
        "Review build logs for specific errors",
        "Check if dependencies are correctly specified",
    ],
    FailureType.DEPLOY: [
        "Verify the deployment configuration",
    ],
    FailureType.CONTAINER: [
        "Check compute backend capacity and quotas",
    ],
    FailureType.TIMEOUT: [
        "Consider raising the command timeout",
    ],
}


def manual_recommendations(event: FailureEvent) -> List[str]:
    return MANUAL_RECOMMENDATIONS.get(event.failure.type, []) + ["Contact support if issue persists"]


# =============================================================================
# Agent
# =============================================================================


class FailureRecoveryAgent(FailureRecovery):
    """
    Strategy-based recovery through the authorization gateway.

    At most ``max_concurrent_recoveries`` recoveries run at once, and at most
    one per (subject, resource, task).
    """

    def __init__(
        self,
        gateway,
        max_concurrent_recoveries: int = 5,
        workspace_root: str = "/workspace",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.max_concurrent_recoveries = max_concurrent_recoveries
        self.workspace_root = workspace_root
        self._sleep = sleep
        self._active: Set[str] = set()
        self._history: List[Dict[str, Any]] = []

    async def handle_failure(self, event: FailureEvent) -> RecoveryResult:
        try:
            event = event if isinstance(event, FailureEvent) else FailureEvent.model_validate(event)
        except Exception as e:
            logger.error(f"Rejected malformed failure event: {e}")
            return RecoveryResult(success=False, error="Invalid failure event")

        key = self._recovery_key(event.context)
        if key in self._active:
            return RecoveryResult(success=False, error="Recovery already in progress for this context")

        if len(self._active) >= self.max_concurrent_recoveries:
            return RecoveryResult(
                success=False,
                error="Maximum concurrent recoveries reached",
                recommendations=["Wait for other recoveries to complete"],
            )

        self._active.add(key)
        try:
            strategy = select_strategy(event)
            if strategy is None:
                result = RecoveryResult(
                    success=False,
                    error="No suitable recovery strategy found",
                    recommendations=manual_recommendations(event),
                )
            else:
                result = await self._execute_strategy(event, strategy)
        except Exception as e:
            logger.error(f"Recovery agent error: {e}")
            result = RecoveryResult(success=False, error=f"Recovery agent error: {e}")
        finally:
            self._active.discard(key)

        self._history.append({
            "timestamp": datetime.now().isoformat(),
            "resource_id": event.context.resource_id,
            "success": result.success,
            "strategy": result.strategy_used,
        })
        return result

    async def _execute_strategy(self, event: FailureEvent, strategy: RecoveryStrategy) -> RecoveryResult:
        logger.info(f"Executing recovery strategy {strategy.name} for {event.context.resource_id}")
        steps_executed = 0

        for step in strategy.steps:
            logger.info(f"Recovery step {steps_executed + 1}/{len(strategy.steps)}: {step.action}")
            outcome = await self._run_action(event.context, step.action, step.parameters)
            steps_executed += 1

            if not outcome.success:
                if step.fallback is None:
                    return self._failed(event, strategy, steps_executed, f"Step failed: {outcome.error}")

                fallback = await self._run_action(event.context, step.fallback, step.parameters)
                if not fallback.success:
                    return self._failed(
                        event, strategy, steps_executed, f"Step failed with fallback: {fallback.error}"
                    )

            if step.validation is not None:
                check = await self._execute(
                    event.context,
                    "executeCommand",
                    {"argv": step.validation, "timeout_ms": 10000},
                )
                if not check.success:
                    return self._failed(event, strategy, steps_executed, "Step validation failed")

        return RecoveryResult(
            success=True,
            strategy_used=strategy.name,
            steps_executed=steps_executed,
            resolution=f"Successfully recovered using {strategy.name} strategy",
        )

    def _failed(self, event: FailureEvent, strategy: RecoveryStrategy, steps: int, error: str) -> RecoveryResult:
        return RecoveryResult(
            success=False,
            strategy_used=strategy.name,
            steps_executed=steps,
            error=error,
            recommendations=[
                f'Recovery strategy "{strategy.name}" failed after {event.failure.attempts} attempts',
                "Consider manual intervention",
                "Check system logs for detailed error information",
            ] + manual_recommendations(event),
        )

    # =========================================================================
    # Actions
    # =========================================================================

    async def _run_action(self, context: SessionContext, action: str, parameters: Dict[str, Any]) -> OperationResult:
        workspace = workspace_path(self.workspace_root, context.resource_id)

        if action == "check-status":
            return await self._execute(context, "getStatus", {})
        if action == "collect-logs":
            return await self._execute(context, "getLogs", {"tail": parameters.get("tail", 100)})
        if action == "stop-container":
            return await self._execute(context, "stopContainer", {})
        if action == "clear-npm-cache":
            return await self._execute(
                context,
                "executeCommand",
                {"argv": ["npm", "cache", "clean", "--force"], "cwd": workspace, "timeout_ms": 30000},
            )
        if action == "check-connectivity":
            return await self._execute(
                context,
                "executeCommand",
                {"argv": ["git", "ls-remote", "origin"], "cwd": workspace, "timeout_ms": 10000},
            )
        if action == "wait":
            await self._sleep(parameters.get("duration_ms", 5000) / 1000)
            return OperationResult(success=True, operation="wait")

        return OperationResult(success=False, operation=action, error=f"Unknown recovery action: {action}")

    async def _execute(self, context: SessionContext, operation: str, parameters: Dict[str, Any]) -> OperationResult:
        return await self.gateway.execute_operation(context, {"operation": operation, "parameters": parameters})

    # =========================================================================
    # Introspection
    # =========================================================================

    @staticmethod
    def _recovery_key(context: SessionContext) -> str:
        return f"{context.subject_id}:{context.resource_id}:{context.task_id}"

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_recoveries": len(self._active),
            "strategies_available": len(RECOVERY_STRATEGIES),
            "recovery_history": list(self._history),
        }
