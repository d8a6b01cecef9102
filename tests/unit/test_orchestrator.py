"""
Unit Tests: DeploymentOrchestrator

Invariant tests:
- Steps run in table order; a fatal failure skips the rest
- Step failures never propagate to start_deployment
- Failed workflows get exactly one recovery attempt, on a separate grant
- Every finished workflow releases its container and revokes its grants
- Only running workflows can be cancelled; late step results are discarded
"""

import asyncio

import pytest

from capgate.errors import (
    OperationTimeoutError,
    RetryExhaustedError,
    ValidationError,
    WorkflowNotFoundError,
    WorkflowStateError,
    WorkflowStepError,
)
from capgate.gateway.backend import CommandOutput
from capgate.orchestration.events import WorkflowEventType
from capgate.orchestration.orchestrator import DeploymentOrchestrator, classify_failure, recovery_task_id
from capgate.orchestration.workflow import STEP_IDS, StepStatus, WorkflowStatus
from capgate.recovery.agent import FailureType
from capgate.utils.retry import RetryPolicy


def deployment(project_name="my-app", **overrides):
    request = {"subject_id": "user-1", "project_name": project_name}
    request.update(overrides)
    return request


def record_events(orchestrator):
    events = []
    orchestrator.events.subscribe(events.append)
    return events


def step_statuses(workflow):
    return {step.id: step.status for step in workflow.steps}


class TestSuccessfulDeployment:
    @pytest.mark.asyncio
    async def test_all_steps_complete(self, orchestrator, backend, issuer):
        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert workflow.status == WorkflowStatus.COMPLETED
        assert all(s.status == StepStatus.COMPLETED for s in workflow.steps)
        assert workflow.container_ref is not None
        assert workflow.deployment_url == f"container://{workflow.container_ref}"
        assert workflow.artifacts == {"build_output": "/tmp/build-output.tar.gz"}
        assert workflow.end_time is not None

        assert backend.containers[workflow.container_ref]["status"] == "Stopped"
        assert issuer.get_grant("user-1", workflow.resource_id, workflow.id) is None

    @pytest.mark.asyncio
    async def test_commands_follow_template(self, orchestrator, backend):
        workflow = await orchestrator.start_deployment(deployment(template="python"))
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        commands = [command for _, command, _ in backend.calls_to("execute_command")]
        workspace = f"/workspace/{workflow.resource_id}"
        assert commands == [
            f"git init {workspace}",
            f"cd {workspace} && pip install -r requirements.txt",
            f"cd {workspace} && mkdir -p generated",
            f"cd {workspace} && python -m pytest",
            f"cd {workspace} && python -m compileall .",
            f"cd {workspace} && tar -czf /tmp/build-output.tar.gz build dist",
        ]

    @pytest.mark.asyncio
    async def test_custom_build_and_clone(self, orchestrator, backend):
        workflow = await orchestrator.start_deployment(
            deployment(
                source_repo="https://github.com/worksquares/my-app",
                build_command="npm run build:prod",
                output_path="out",
            )
        )
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        commands = [command for _, command, _ in backend.calls_to("execute_command")]
        workspace = f"/workspace/{workflow.resource_id}"
        assert workflow.status == WorkflowStatus.COMPLETED
        assert commands[0] == f"git clone https://github.com/worksquares/my-app {workspace}"
        assert f"cd {workspace} && npm run build:prod" in commands
        assert commands[-1] == f"cd {workspace} && tar -czf /tmp/build-output.tar.gz out"

    @pytest.mark.asyncio
    async def test_event_order(self, orchestrator):
        events = record_events(orchestrator)

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        expected = [WorkflowEventType.WORKFLOW_STARTED]
        for _ in STEP_IDS:
            expected += [WorkflowEventType.STEP_STARTED, WorkflowEventType.STEP_COMPLETED]
        expected.append(WorkflowEventType.WORKFLOW_COMPLETED)

        assert [e.type for e in events] == expected
        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        assert [e.step_id for e in events if e.type == WorkflowEventType.STEP_STARTED] == STEP_IDS

    @pytest.mark.asyncio
    async def test_start_returns_running(self, orchestrator):
        workflow = await orchestrator.start_deployment(deployment())

        assert workflow.status == WorkflowStatus.RUNNING
        assert orchestrator.get_workflow(workflow.id) is workflow
        assert workflow.resource_id.startswith("my-app-")
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

    @pytest.mark.asyncio
    async def test_same_project_deployments_own_their_containers(self, orchestrator, backend, issuer):
        first = await orchestrator.start_deployment(deployment("demo"))
        second = await orchestrator.start_deployment(deployment("demo"))
        await orchestrator.wait_for_completion(first.id, timeout=5)
        await orchestrator.wait_for_completion(second.id, timeout=5)

        assert first.resource_id != second.resource_id
        assert first.container_ref != second.container_ref
        assert first.deployment_url == f"container://{first.container_ref}"
        assert second.deployment_url == f"container://{second.container_ref}"
        assert sorted(args[0] for args in backend.calls_to("stop")) == sorted([first.container_ref, second.container_ref])
        assert all(c["status"] == "Stopped" for c in backend.containers.values())
        assert issuer.get_stats()["active_grants"] == 0


class TestFailedDeployment:
    @pytest.mark.asyncio
    async def test_fatal_failure_skips_remaining_steps(self, orchestrator, backend):
        backend.script_command("npm run build", CommandOutput(exit_code=1, stderr="build failed"))

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        statuses = step_statuses(workflow)
        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.error == "Build failed: build failed"
        assert [statuses[s] for s in STEP_IDS[:6]] == [StepStatus.COMPLETED] * 6
        assert statuses["build"] == StepStatus.FAILED
        assert [statuses[s] for s in STEP_IDS[7:]] == [StepStatus.SKIPPED] * 4
        assert workflow.get_step("build").error == "Build failed: build failed"

    @pytest.mark.asyncio
    async def test_failure_releases_resources(self, orchestrator, backend, issuer):
        backend.script_command("npm run build", CommandOutput(exit_code=1, stderr="build failed"))

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert backend.containers[workflow.container_ref]["status"] == "Stopped"
        assert issuer.get_grant("user-1", workflow.resource_id, workflow.id) is None
        assert issuer.get_grant("user-1", workflow.resource_id, recovery_task_id(workflow.id)) is None
        assert issuer.get_stats()["active_grants"] == 0

    @pytest.mark.asyncio
    async def test_exactly_one_recovery(self, orchestrator, backend):
        backend.script_command("npm run build", CommandOutput(exit_code=1, stderr="build failed"))
        events = record_events(orchestrator)

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        recovery = orchestrator.get_recovery(workflow.id)
        assert recovery is not None
        assert recovery.success
        assert recovery.strategy_used == "Generic Recovery"
        assert [e.type for e in events].count(WorkflowEventType.RECOVERY_ATTEMPTED) == 1
        assert [e.type for e in events][-3:] == [
            WorkflowEventType.STEP_FAILED,
            WorkflowEventType.WORKFLOW_FAILED,
            WorkflowEventType.RECOVERY_ATTEMPTED,
        ]
        # Recovery stays diagnostic
        assert workflow.status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_non_fatal_test_failure(self, orchestrator, backend):
        backend.script_command("npm test", CommandOutput(exit_code=1, stderr="2 failing"))

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert workflow.status == WorkflowStatus.COMPLETED
        assert workflow.get_step("run-tests").status == StepStatus.FAILED
        assert workflow.get_step("run-tests").error == "Tests failed: 2 failing"
        assert orchestrator.get_recovery(workflow.id) is None

    @pytest.mark.asyncio
    async def test_untrusted_repository_fails_fetch(self, orchestrator, backend):
        workflow = await orchestrator.start_deployment(
            deployment(source_repo="https://github.com/attacker/app")
        )
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.get_step("fetch-or-init-source").status == StepStatus.FAILED
        assert workflow.error == "Source fetch failed: Untrusted repository"
        assert orchestrator.get_recovery(workflow.id).strategy_used == "Git Recovery"

    @pytest.mark.asyncio
    async def test_container_creation_failure(self, orchestrator, backend):
        backend.fail_method("create_container")

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.current_step.id == "create-compute-resource"
        assert workflow.container_ref is None
        assert backend.calls_to("stop") == []

    @pytest.mark.asyncio
    async def test_without_recovery_collaborator(self, issuer, gateway, backend):
        orchestrator = DeploymentOrchestrator(issuer, gateway)
        backend.script_command("npm install", CommandOutput(exit_code=1, stderr="npm ERR! 404"))

        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        assert workflow.status == WorkflowStatus.FAILED
        assert orchestrator.get_recovery(workflow.id) is None
        assert issuer.get_stats()["active_grants"] == 0


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_request_raises_and_stores_nothing(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.start_deployment(deployment(project_name="../etc"))
        assert orchestrator.list_workflows() == []

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, orchestrator):
        assert orchestrator.find_workflow("missing") is None
        with pytest.raises(WorkflowNotFoundError):
            orchestrator.get_workflow("missing")
        with pytest.raises(WorkflowNotFoundError):
            await orchestrator.cancel_workflow("missing")

    @pytest.mark.asyncio
    async def test_list_by_subject(self, orchestrator):
        a = await orchestrator.start_deployment(deployment("app-a"))
        b = await orchestrator.start_deployment(deployment("app-b", subject_id="user-2"))
        await orchestrator.wait_for_completion(a.id, timeout=5)
        await orchestrator.wait_for_completion(b.id, timeout=5)

        assert [w.id for w in orchestrator.list_workflows("user-2")] == [b.id]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_finished_workflow_raises(self, orchestrator):
        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        with pytest.raises(WorkflowStateError):
            await orchestrator.cancel_workflow(workflow.id)
        assert workflow.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, orchestrator, backend, issuer):
        backend.command_delay = 0.2
        fetch_started = asyncio.Event()
        events = record_events(orchestrator)
        orchestrator.events.subscribe(
            lambda e: fetch_started.set() if e.step_id == "fetch-or-init-source" else None
        )

        workflow = await orchestrator.start_deployment(deployment())
        await asyncio.wait_for(fetch_started.wait(), 5)
        await orchestrator.cancel_workflow(workflow.id)
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        fetch = workflow.get_step("fetch-or-init-source")
        assert workflow.status == WorkflowStatus.CANCELLED
        assert workflow.error == "Workflow cancelled"
        assert fetch.status == StepStatus.SKIPPED
        assert fetch.error == "Workflow cancelled"
        assert fetch.output is None
        assert all(s.status == StepStatus.SKIPPED for s in workflow.steps[3:])

        types = [e.type for e in events]
        assert types[-1] == WorkflowEventType.WORKFLOW_CANCELLED
        assert WorkflowEventType.WORKFLOW_COMPLETED not in types

        ref = backend.calls_to("create_container")[0][0].name
        assert backend.containers[ref]["status"] == "Stopped"
        assert issuer.get_stats()["active_grants"] == 0

    @pytest.mark.asyncio
    async def test_cancel_from_step_started_subscriber(self, orchestrator, backend):
        async def cancel_on_build(event):
            if event.type == WorkflowEventType.STEP_STARTED and event.step_id == "build":
                await orchestrator.cancel_workflow(event.workflow_id)

        orchestrator.events.subscribe(cancel_on_build)
        workflow = await orchestrator.start_deployment(deployment())
        await orchestrator.wait_for_completion(workflow.id, timeout=5)

        commands = [args[1] for args in backend.calls_to("execute_command")]
        assert workflow.status == WorkflowStatus.CANCELLED
        assert workflow.get_step("build").status == StepStatus.SKIPPED
        assert any("npm test" in c for c in commands)
        assert not any("npm run build" in c for c in commands)
        assert all(c["status"] == "Stopped" for c in backend.containers.values())

    @pytest.mark.asyncio
    async def test_wait_timeout(self, orchestrator, backend):
        backend.command_delay = 0.5
        workflow = await orchestrator.start_deployment(deployment())

        with pytest.raises(OperationTimeoutError):
            await orchestrator.wait_for_completion(workflow.id, timeout=0.05)

        await orchestrator.shutdown()
        assert workflow.status == WorkflowStatus.CANCELLED
        assert orchestrator.is_finished(workflow.id)


class TestRunDeployment:
    @pytest.mark.asyncio
    async def test_success(self, orchestrator):
        workflow = await orchestrator.run_deployment(deployment(), timeout=5)
        assert workflow.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_raises_step_error(self, orchestrator, backend):
        backend.script_command("npm run build", CommandOutput(exit_code=1, stderr="build failed"))

        with pytest.raises(WorkflowStepError) as exc_info:
            await orchestrator.run_deployment(deployment(), timeout=5)
        assert exc_info.value.step_id == "build"

    @pytest.mark.asyncio
    async def test_retry_only_transient_failures(self, orchestrator, backend):
        backend.script_command("npm run build", CommandOutput(exit_code=1, stderr="build failed"))

        with pytest.raises(WorkflowStepError):
            await orchestrator.deploy_with_retry(deployment(), RetryPolicy(max_attempts=3, backoff_ms=0))
        assert len(orchestrator.list_workflows()) == 1

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, orchestrator, backend):
        backend.script_command("npm install", CommandOutput(exit_code=1, stderr="ECONNRESET"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await orchestrator.deploy_with_retry(deployment(), RetryPolicy(max_attempts=2, backoff_ms=0))

        assert exc_info.value.attempts == 2
        assert len(orchestrator.list_workflows()) == 2
        assert all(w.status == WorkflowStatus.FAILED for w in orchestrator.list_workflows())


class TestClassifyFailure:
    @pytest.mark.parametrize(
        "step_id,error,expected",
        [
            ("build", "Command timed out after 300000ms", FailureType.TIMEOUT),
            ("build", "invalid session", FailureType.PERMISSION),
            ("fetch-or-init-source", "Source fetch failed: x", FailureType.GIT),
            ("create-compute-resource", "Container creation failed", FailureType.CONTAINER),
            ("start-application", "Application start failed", FailureType.DEPLOY),
            ("install-dependencies", "npm ERR! 404", FailureType.BUILD),
        ],
    )
    def test_mapping(self, step_id, error, expected):
        assert classify_failure(step_id, error) == expected
