"""
Recovery Module

Failure contracts and the strategy-based recovery agent the orchestrator
hands terminal workflow failures to.
"""

from .agent import (
    MAX_FAILURE_ATTEMPTS,
    RECOVERY_STRATEGIES,
    FailureDetails,
    FailureEvent,
    FailureRecovery,
    FailureRecoveryAgent,
    FailureType,
    RecoveryResult,
    RecoveryStep,
    RecoveryStrategy,
    select_strategy,
)

__all__ = [
    "FailureRecovery",
    "FailureRecoveryAgent",
    "FailureEvent",
    "FailureDetails",
    "FailureType",
    "RecoveryResult",
    "RecoveryStep",
    "RecoveryStrategy",
    "RECOVERY_STRATEGIES",
    "MAX_FAILURE_ATTEMPTS",
    "select_strategy",
]
