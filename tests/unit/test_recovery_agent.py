"""
Unit Tests: FailureRecoveryAgent

Tests:
- Strategy selection by failure type and error text
- Permission failures and exhausted attempts get manual recommendations
- Strategies run through the gateway with the recovery grant only
- Fallbacks and validation commands
- One recovery per context, bounded concurrency, never raises
"""

import asyncio

import pytest
import pytest_asyncio

from capgate.gateway.backend import CommandOutput
from capgate.gateway.operations import SessionContext
from capgate.recovery.agent import (
    FailureDetails,
    FailureEvent,
    FailureRecoveryAgent,
    FailureType,
    select_strategy,
)
from capgate.trust.scopes import RECOVERY_SCOPES

PRIMARY_SCOPES = ["container:create", "container:execute", "container:read", "container:stop"]


def failure_event(context, failure_type=FailureType.BUILD, error="Build failed", attempts=1):
    return FailureEvent(
        context=context,
        failure=FailureDetails(type=failure_type, operation="build", error=error, attempts=attempts),
    )


@pytest_asyncio.fixture
async def recovery_context(issuer, gateway, make_context):
    """Container provisioned under a primary grant, plus a recovery grant on the same resource."""
    primary = await issuer.create_grant("user-1", "proj-1", "wf-1", PRIMARY_SCOPES, 10)
    await gateway.execute_operation(
        make_context(primary), {"operation": "createContainer", "parameters": {}}
    )
    grant = await issuer.create_grant("user-1", "proj-1", "wf-1-recovery", list(RECOVERY_SCOPES), 10)
    return make_context(grant)


class TestStrategySelection:
    def _event(self, failure_type, error="boom", attempts=1):
        context = SessionContext(subject_id="u", resource_id="r", task_id="t", session_secret="s" * 64)
        return failure_event(context, failure_type, error, attempts)

    @pytest.mark.parametrize(
        "failure_type,error,expected",
        [
            (FailureType.GIT, "fatal: repository not found", "git-error"),
            (FailureType.BUILD, "npm ERR! code ERESOLVE", "npm-error"),
            (FailureType.CONTAINER, "Container not found: cg-x", "container-missing"),
            (FailureType.TIMEOUT, "Command timed out", "timeout"),
            (FailureType.BUILD, "tsc exited 2", "generic"),
            (FailureType.DEPLOY, "unhealthy", "generic"),
        ],
    )
    def test_mapping(self, failure_type, error, expected):
        assert select_strategy(self._event(failure_type, error)).key == expected

    def test_permission_needs_human(self):
        assert select_strategy(self._event(FailureType.PERMISSION)) is None
        assert select_strategy(self._event(FailureType.GIT, "Permission denied (publickey)")) is None

    def test_too_many_attempts(self):
        assert select_strategy(self._event(FailureType.BUILD, attempts=3)) is not None
        assert select_strategy(self._event(FailureType.BUILD, attempts=4)) is None


class TestHandleFailure:
    @pytest.mark.asyncio
    async def test_generic_strategy_succeeds(self, recovery, recovery_context, backend):
        result = await recovery.handle_failure(failure_event(recovery_context))

        assert result.success
        assert result.strategy_used == "Generic Recovery"
        assert result.steps_executed == 2
        assert result.resolution == "Successfully recovered using Generic Recovery strategy"
        assert backend.calls_to("get_logs")[0][1] == 100

    @pytest.mark.asyncio
    async def test_timeout_strategy_stops_container(self, recovery, recovery_context, backend):
        result = await recovery.handle_failure(
            failure_event(recovery_context, FailureType.TIMEOUT, "Command timed out after 10ms")
        )

        assert result.success
        ref = backend.calls_to("stop")[0][0]
        assert backend.containers[ref]["status"] == "Stopped"

    @pytest.mark.asyncio
    async def test_npm_strategy_runs_cache_clean_and_validation(self, recovery, recovery_context, backend):
        result = await recovery.handle_failure(
            failure_event(recovery_context, FailureType.BUILD, "npm ERR! network")
        )

        commands = [command for _, command, _ in backend.calls_to("execute_command")]
        assert result.success
        assert commands == ["cd /workspace/proj-1 && npm cache clean --force", "npm --version"]

    @pytest.mark.asyncio
    async def test_failed_validation(self, recovery, recovery_context, backend):
        backend.script_command("npm --version", CommandOutput(exit_code=127, stderr="npm: not found"))

        result = await recovery.handle_failure(
            failure_event(recovery_context, FailureType.BUILD, "npm ERR! network")
        )

        assert not result.success
        assert result.error == "Step validation failed"
        assert result.strategy_used == "NPM Recovery"

    @pytest.mark.asyncio
    async def test_git_strategy_uses_fallback(self, recovery, recovery_context, backend):
        backend.script_command("ls-remote", CommandOutput(exit_code=128, stderr="could not read from remote"))

        result = await recovery.handle_failure(
            failure_event(recovery_context, FailureType.GIT, "fatal: unable to access")
        )

        assert result.success
        assert result.strategy_used == "Git Recovery"
        assert len(backend.calls_to("get_logs")) == 1

    @pytest.mark.asyncio
    async def test_step_failure_without_fallback(self, recovery, issuer, make_context):
        grant = await issuer.create_grant("user-1", "proj-9", "wf-9-recovery", list(RECOVERY_SCOPES), 10)

        result = await recovery.handle_failure(
            failure_event(make_context(grant), FailureType.CONTAINER, "Container not found: cg-x")
        )

        assert not result.success
        assert result.strategy_used == "Container Recovery"
        assert result.steps_executed == 2
        assert result.error.startswith("Step failed: Container not found")
        assert "Consider manual intervention" in result.recommendations

    @pytest.mark.asyncio
    async def test_recovery_grant_cannot_create(self, recovery, recovery_context, gateway):
        result = await gateway.execute_operation(
            recovery_context, {"operation": "createContainer", "parameters": {}}
        )
        assert result.error_code == "AUTHORIZATION_ERROR"

    @pytest.mark.asyncio
    async def test_manual_intervention(self, recovery, recovery_context, backend):
        calls_before = len(backend.calls)

        result = await recovery.handle_failure(
            failure_event(recovery_context, FailureType.PERMISSION, "Permission denied")
        )

        assert not result.success
        assert result.error == "No suitable recovery strategy found"
        assert "Check the subject's grants for the resource" in result.recommendations
        assert result.recommendations[-1] == "Contact support if issue persists"
        assert len(backend.calls) == calls_before

    @pytest.mark.asyncio
    async def test_invalid_session_is_a_failed_result(self, recovery, backend):
        context = SessionContext(subject_id="u", resource_id="r", task_id="t", session_secret="s" * 64)

        result = await recovery.handle_failure(failure_event(context))

        assert not result.success
        assert "invalid session" in result.error
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_malformed_event(self, recovery):
        result = await recovery.handle_failure({"context": {}, "failure": {}})

        assert not result.success
        assert result.error == "Invalid failure event"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_recovery_per_context(self, gateway, recovery_context):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking_sleep(_seconds):
            started.set()
            await release.wait()

        agent = FailureRecoveryAgent(gateway, sleep=blocking_sleep)
        event = failure_event(recovery_context, FailureType.CONTAINER, "Container not found: x")

        first = asyncio.create_task(agent.handle_failure(event))
        await started.wait()
        second = await agent.handle_failure(event)
        assert agent.get_stats()["active_recoveries"] == 1
        release.set()
        await first

        assert second.error == "Recovery already in progress for this context"
        assert agent.get_stats()["active_recoveries"] == 0

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, gateway, recovery_context):
        agent = FailureRecoveryAgent(gateway, max_concurrent_recoveries=0)

        result = await agent.handle_failure(failure_event(recovery_context))

        assert result.error == "Maximum concurrent recoveries reached"

    @pytest.mark.asyncio
    async def test_stats_history(self, recovery, recovery_context):
        await recovery.handle_failure(failure_event(recovery_context))

        stats = recovery.get_stats()
        assert stats["strategies_available"] == 5
        assert stats["recovery_history"][0]["strategy"] == "Generic Recovery"
        assert stats["recovery_history"][0]["success"] is True
