"""
Shared fixtures: isolated issuer/gateway/orchestrator per test, controllable clock.
"""

from datetime import datetime, timedelta

import pytest

from capgate.gateway.backend import InMemoryComputeBackend
from capgate.gateway.cleanup import CleanupManager
from capgate.gateway.gateway import AuthorizationGateway
from capgate.gateway.operations import SessionContext
from capgate.orchestration.orchestrator import DeploymentOrchestrator
from capgate.recovery.agent import FailureRecoveryAgent
from capgate.trust.issuer import CapabilityIssuer


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def no_sleep(_seconds: float) -> None:
    return None


def context_for(grant) -> SessionContext:
    return SessionContext(
        subject_id=grant.subject_id,
        resource_id=grant.resource_id,
        task_id=grant.task_id,
        session_secret=grant.session_secret,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return CapabilityIssuer(clock=clock)


@pytest.fixture
def backend():
    return InMemoryComputeBackend()


@pytest.fixture
def cleanup():
    return CleanupManager()


@pytest.fixture
def gateway(issuer, backend, cleanup):
    return AuthorizationGateway(issuer, backend, cleanup=cleanup)


@pytest.fixture
def recovery(gateway):
    return FailureRecoveryAgent(gateway, sleep=no_sleep)


@pytest.fixture
def orchestrator(issuer, gateway, recovery):
    return DeploymentOrchestrator(issuer, gateway, recovery=recovery)


@pytest.fixture
def make_context():
    return context_for
