"""
Deployment Workflow Orchestrator

Drives the fixed deployment step table through the authorization gateway.

Lifecycle:
    start_deployment  -> workflow record, pending → running, background task
    each step         -> running → completed | failed (run-tests is non-fatal)
    fatal step error  -> remaining steps skipped, workflow failed,
                         recovery with a narrower grant, resource release
    cancel_workflow   -> running → cancelled; the in-flight call finishes but
                         its result is not recorded; resources released

Step failures never propagate to the start_deployment caller; they are
visible through the workflow record and the event stream only.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from capgate.errors import (
    OperationTimeoutError,
    ValidationError,
    WorkflowNotFoundError,
    WorkflowStateError,
    WorkflowStepError,
)
from capgate.gateway.operations import OperationResult, SessionContext
from capgate.gateway.policy import workspace_path
from capgate.recovery.agent import (
    FailureDetails,
    FailureEvent,
    FailureRecovery,
    FailureType,
    RecoveryResult,
)
from capgate.trust.scopes import DEPLOYMENT_SCOPES, RECOVERY_SCOPES
from capgate.utils.retry import RetryPolicy, with_retry

from .events import EventBus, WorkflowEventType
from .store import InMemoryWorkflowStore, WorkflowStore
from .templates import (
    ARTIFACT_ARCHIVE,
    BUILD_TIMEOUT_MS,
    CODEGEN_TIMEOUT_MS,
    EXTRACT_TIMEOUT_MS,
    INSTALL_TIMEOUT_MS,
    TEST_TIMEOUT_MS,
    archive_argv,
    get_template,
)
from .workflow import (
    DEPLOYMENT_STEPS,
    DeploymentRequest,
    Step,
    StepStatus,
    Workflow,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

StepOutcome = Tuple[str, Dict[str, Any]]

CANCELLED_MESSAGE = "Workflow cancelled"


def recovery_task_id(workflow_id: str) -> str:
    return f"{workflow_id}-recovery"


def classify_failure(step_id: Optional[str], error: str) -> FailureType:
    """Map a failed step and its error text to a failure type."""
    lowered = error.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return FailureType.TIMEOUT
    if "permission denied" in lowered or "invalid session" in lowered or "not permitted" in lowered:
        return FailureType.PERMISSION
    if step_id == "fetch-or-init-source" or lowered.startswith("git") or "git " in lowered:
        return FailureType.GIT
    if step_id in ("create-compute-resource", "verify-application") or "container not found" in lowered:
        return FailureType.CONTAINER
    if step_id in ("start-application", "cleanup"):
        return FailureType.DEPLOY
    return FailureType.BUILD


class DeploymentOrchestrator:
    """
    Runs deployments as background tasks, one workflow per attempt.

    Collaborators are injected; the orchestrator owns the workflow store and
    the primary grant of every workflow it starts.
    """

    def __init__(
        self,
        issuer,
        gateway,
        recovery: Optional[FailureRecovery] = None,
        store: Optional[WorkflowStore] = None,
        events: Optional[EventBus] = None,
        grant_duration_minutes: int = 120,
        recovery_grant_duration_minutes: int = 10,
        workspace_root: str = "/workspace",
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.issuer = issuer
        self.gateway = gateway
        self.recovery = recovery
        self.store = store if store is not None else InMemoryWorkflowStore()
        self.events = events if events is not None else EventBus()
        self.grant_duration_minutes = grant_duration_minutes
        self.recovery_grant_duration_minutes = recovery_grant_duration_minutes
        self.workspace_root = workspace_root
        self.retry_policy = retry_policy or RetryPolicy()

        self._tasks: Dict[str, asyncio.Task] = {}
        self._contexts: Dict[str, SessionContext] = {}
        self._containers: Dict[str, str] = {}
        self._recoveries: Dict[str, RecoveryResult] = {}

        self._handlers = {
            "acquire-grant": self._acquire_grant,
            "create-compute-resource": self._create_compute_resource,
            "fetch-or-init-source": self._fetch_or_init_source,
            "install-dependencies": self._install_dependencies,
            "generate-or-modify-code": self._generate_or_modify_code,
            "run-tests": self._run_tests,
            "build": self._build,
            "extract-artifacts": self._extract_artifacts,
            "start-application": self._start_application,
            "verify-application": self._verify_application,
            "cleanup": self._cleanup,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_deployment(self, request: Any) -> Workflow:
        """
        Create a workflow and start it in the background.

        Returns as soon as the workflow is running; step failures are never
        raised here.

        Raises:
            ValidationError: If the request is malformed
        """
        try:
            request = request if isinstance(request, DeploymentRequest) else DeploymentRequest.model_validate(request)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid deployment request: {e.error_count()} error(s)") from e

        workflow_id = str(uuid.uuid4())
        workflow = Workflow(
            id=workflow_id,
            subject_id=request.subject_id,
            resource_id=f"{request.project_name}-{int(time.time() * 1000)}-{workflow_id[:8]}",
            project_name=request.project_name,
            template=request.template,
            steps=[Step.from_definition(d) for d in DEPLOYMENT_STEPS],
        )
        self.store.insert(workflow)

        workflow.transition(WorkflowStatus.RUNNING)
        logger.info(f"Starting deployment workflow {workflow.id} for {workflow.resource_id}")
        await self.events.emit(
            WorkflowEventType.WORKFLOW_STARTED,
            workflow.id,
            data={
                "subject_id": workflow.subject_id,
                "resource_id": workflow.resource_id,
                "project_name": workflow.project_name,
                "template": workflow.template,
            },
        )

        self._tasks[workflow.id] = asyncio.create_task(self._run(workflow, request))
        return workflow

    def find_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self.store.get(workflow_id)

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.store.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def list_workflows(self, subject_id: Optional[str] = None) -> List[Workflow]:
        return self.store.list_workflows(subject_id)

    def get_recovery(self, workflow_id: str) -> Optional[RecoveryResult]:
        return self._recoveries.get(workflow_id)

    def is_finished(self, workflow_id: str) -> bool:
        """True once the workflow's background run (including release) is over."""
        task = self._tasks.get(workflow_id)
        return task is None or task.done()

    async def cancel_workflow(self, workflow_id: str) -> Workflow:
        """
        Cancel a running workflow.

        Raises:
            WorkflowNotFoundError: Unknown id
            WorkflowStateError: Workflow is not running (state unchanged)
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.RUNNING:
            raise WorkflowStateError(
                f"Workflow {workflow_id} is {workflow.status.value}; only running workflows can be cancelled"
            )

        for step in workflow.steps:
            if step.status == StepStatus.RUNNING:
                step.status = StepStatus.SKIPPED
                step.end_time = datetime.now()
                step.error = CANCELLED_MESSAGE
            elif step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED

        workflow.error = CANCELLED_MESSAGE
        workflow.transition(WorkflowStatus.CANCELLED)
        logger.info(f"Cancelled workflow {workflow_id}")
        await self.events.emit(WorkflowEventType.WORKFLOW_CANCELLED, workflow_id)
        return workflow

    async def wait_for_completion(self, workflow_id: str, timeout: Optional[float] = None) -> Workflow:
        """
        Wait until the workflow's background run has finished.

        Raises:
            WorkflowNotFoundError: Unknown id
            OperationTimeoutError: Not finished within ``timeout`` seconds
        """
        workflow = self.get_workflow(workflow_id)
        task = self._tasks.get(workflow_id)
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                raise OperationTimeoutError(f"Workflow {workflow_id} did not finish within {timeout}s")
        return workflow

    async def run_deployment(self, request: Any, timeout: Optional[float] = None) -> Workflow:
        """
        Start a deployment and wait for it.

        Raises:
            WorkflowStepError: The workflow failed
            WorkflowStateError: The workflow was cancelled
        """
        workflow = await self.start_deployment(request)
        await self.wait_for_completion(workflow.id, timeout)

        if workflow.status == WorkflowStatus.FAILED:
            failed = next((s for s in workflow.steps if s.status == StepStatus.FAILED and s.fatal), None)
            raise WorkflowStepError(workflow.error or "Deployment failed", step_id=failed.id if failed else None)
        if workflow.status == WorkflowStatus.CANCELLED:
            raise WorkflowStateError(f"Workflow {workflow.id} was cancelled")
        return workflow

    async def deploy_with_retry(self, request: Any, policy: Optional[RetryPolicy] = None) -> Workflow:
        """Run whole deployment attempts until one succeeds or retries run out."""
        if not isinstance(request, DeploymentRequest):
            try:
                request = DeploymentRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid deployment request: {e.error_count()} error(s)") from e

        return await with_retry(
            lambda: self.run_deployment(request),
            policy or self.retry_policy,
            context=f"deployment {request.project_name}",
        )

    async def shutdown(self) -> None:
        """Cancel running workflows and wait for their background runs."""
        for workflow in self.store.list_workflows():
            if workflow.status == WorkflowStatus.RUNNING:
                try:
                    await self.cancel_workflow(workflow.id)
                except WorkflowStateError:
                    pass

        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Driver
    # =========================================================================

    async def _run(self, workflow: Workflow, request: DeploymentRequest) -> None:
        try:
            for index, step in enumerate(workflow.steps):
                if workflow.is_terminal():
                    break
                workflow.current_step_index = index

                proceed = await self._execute_step(workflow, step, request)
                if not proceed:
                    break

            if workflow.status == WorkflowStatus.RUNNING:
                workflow.transition(WorkflowStatus.COMPLETED)
                logger.info(f"Workflow {workflow.id} completed")
                await self.events.emit(WorkflowEventType.WORKFLOW_COMPLETED, workflow.id)

        except Exception as e:
            logger.error(f"Workflow {workflow.id} driver error: {e}")
            if workflow.status == WorkflowStatus.RUNNING:
                await self._fail(workflow, workflow.current_step, str(e))

        finally:
            if workflow.status == WorkflowStatus.CANCELLED:
                await self._release(workflow)
            self.events.close(workflow.id)

    async def _execute_step(self, workflow: Workflow, step: Step, request: DeploymentRequest) -> bool:
        """Run one step. Returns whether the workflow should continue."""
        step.status = StepStatus.RUNNING
        step.start_time = datetime.now()
        await self.events.emit(WorkflowEventType.STEP_STARTED, workflow.id, step_id=step.id)
        if workflow.is_terminal():
            logger.info(f"Workflow {workflow.id} ended before {step.id} started")
            return False

        try:
            output, updates = await self._handlers[step.id](workflow, request)
        except Exception as e:
            if workflow.is_terminal():
                logger.info(f"Discarding late failure of {step.id} for cancelled workflow {workflow.id}")
                return False

            error = str(e) or type(e).__name__
            step.status = StepStatus.FAILED
            step.end_time = datetime.now()
            step.error = error
            await self.events.emit(
                WorkflowEventType.STEP_FAILED,
                workflow.id,
                step_id=step.id,
                data={"error": error, "fatal": step.fatal},
            )

            if not step.fatal:
                logger.warning(f"Step {step.id} failed, continuing: {error}")
                return True

            await self._fail(workflow, step, error)
            return False

        if workflow.is_terminal():
            logger.info(f"Discarding late result of {step.id} for cancelled workflow {workflow.id}")
            return False

        for name, value in updates.items():
            setattr(workflow, name, value)
        step.status = StepStatus.COMPLETED
        step.end_time = datetime.now()
        step.output = output
        await self.events.emit(
            WorkflowEventType.STEP_COMPLETED,
            workflow.id,
            step_id=step.id,
            data={"output": output},
        )
        return True

    async def _fail(self, workflow: Workflow, step: Optional[Step], error: str) -> None:
        for remaining in workflow.steps:
            if remaining.status == StepStatus.PENDING:
                remaining.status = StepStatus.SKIPPED

        workflow.error = error
        workflow.transition(WorkflowStatus.FAILED)
        logger.error(f"Workflow {workflow.id} failed at {step.id if step else 'unknown'}: {error}")
        await self.events.emit(
            WorkflowEventType.WORKFLOW_FAILED,
            workflow.id,
            step_id=step.id if step else None,
            data={"error": error},
        )

        await self.attempt_recovery(workflow, error)
        await self._release(workflow)

    # =========================================================================
    # Recovery and release
    # =========================================================================

    async def attempt_recovery(self, workflow: Workflow, error: str) -> Optional[RecoveryResult]:
        """
        Hand a failed workflow to the recovery collaborator.

        Uses a separate short-lived grant (read/execute/stop) that is revoked
        whatever the outcome. The workflow stays failed.
        """
        if self.recovery is None:
            return None

        task_id = recovery_task_id(workflow.id)
        step = workflow.current_step
        try:
            grant = await self.issuer.create_grant(
                workflow.subject_id,
                workflow.resource_id,
                task_id,
                RECOVERY_SCOPES,
                self.recovery_grant_duration_minutes,
            )
            event = FailureEvent(
                context=SessionContext(
                    subject_id=workflow.subject_id,
                    resource_id=workflow.resource_id,
                    task_id=task_id,
                    session_secret=grant.session_secret,
                ),
                failure=FailureDetails(
                    type=classify_failure(step.id if step else None, error),
                    operation=step.name if step else "unknown",
                    error=error,
                    attempts=1,
                ),
            )
            result = await self.recovery.handle_failure(event)
        except Exception as e:
            logger.error(f"Recovery failed for workflow {workflow.id}: {e}")
            result = RecoveryResult(success=False, error=f"Recovery failed: {e}")
        finally:
            try:
                await self.issuer.revoke(workflow.subject_id, workflow.resource_id, task_id)
            except Exception as e:
                logger.error(f"Failed to revoke recovery grant for {workflow.id}: {e}")

        if result.success:
            logger.info(f"Recovery for {workflow.id} succeeded using {result.strategy_used}")
        else:
            logger.warning(f"Recovery for {workflow.id} unsuccessful: {result.error}")

        self._recoveries[workflow.id] = result
        await self.events.emit(
            WorkflowEventType.RECOVERY_ATTEMPTED,
            workflow.id,
            data=result.model_dump(),
        )
        return result

    async def _release(self, workflow: Workflow) -> List[str]:
        """Stop the compute resource and revoke the primary grant. Never raises."""
        actions: List[str] = []
        context = self._contexts.pop(workflow.id, None)
        container = self._containers.pop(workflow.id, None)

        if context is not None and container is not None:
            try:
                result = await self.gateway.execute_operation(context, {"operation": "stopContainer"})
                if result.success:
                    actions.append(f"stopped {container}")
                else:
                    logger.warning(f"Failed to stop {container} for {workflow.id}: {result.error}")
            except Exception as e:
                logger.error(f"Failed to stop {container} for {workflow.id}: {e}")

        try:
            if await self.issuer.revoke(workflow.subject_id, workflow.resource_id, workflow.id):
                actions.append("revoked grant")
        except Exception as e:
            logger.error(f"Failed to revoke grant for {workflow.id}: {e}")

        return actions

    # =========================================================================
    # Step handlers
    # =========================================================================

    async def _op(self, workflow: Workflow, operation: str, parameters: Optional[Dict[str, Any]] = None) -> OperationResult:
        context = self._contexts.get(workflow.id)
        if context is None:
            raise WorkflowStepError("No grant for workflow")
        return await self.gateway.execute_operation(
            context, {"operation": operation, "parameters": parameters or {}}
        )

    async def _command(self, workflow: Workflow, argv: List[str], timeout_ms: int) -> OperationResult:
        return await self._op(
            workflow,
            "executeCommand",
            {
                "argv": argv,
                "cwd": workspace_path(self.workspace_root, workflow.resource_id),
                "timeout_ms": timeout_ms,
            },
        )

    async def _acquire_grant(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        grant = await self.issuer.create_grant(
            workflow.subject_id,
            workflow.resource_id,
            workflow.id,
            DEPLOYMENT_SCOPES,
            self.grant_duration_minutes,
        )
        self._contexts[workflow.id] = SessionContext(
            subject_id=workflow.subject_id,
            resource_id=workflow.resource_id,
            task_id=workflow.id,
            session_secret=grant.session_secret,
        )
        return f"Grant acquired, expires {grant.expires_at.isoformat()}", {}

    async def _create_compute_resource(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._op(
            workflow,
            "createContainer",
            {"template": request.template, "environment_variables": dict(request.env_vars)},
        )
        if not result.success:
            raise WorkflowStepError(f"Container creation failed: {result.error}", step_id="create-compute-resource")

        ref = result.data["ref"]
        self._containers[workflow.id] = ref
        return f"Container {ref} created", {"container_ref": ref}

    async def _fetch_or_init_source(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        if request.source_repo:
            result = await self._op(workflow, "gitClone", {"repository": request.source_repo})
            output = f"Cloned {request.source_repo}"
        else:
            result = await self._op(
                workflow,
                "executeCommand",
                {"argv": ["git", "init", workspace_path(self.workspace_root, workflow.resource_id)]},
            )
            output = "Initialised empty repository"

        if not result.success:
            raise WorkflowStepError(f"Source fetch failed: {result.error}", step_id="fetch-or-init-source")
        return output, {}

    async def _install_dependencies(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._command(workflow, get_template(request.template).install, INSTALL_TIMEOUT_MS)
        if not result.success:
            raise WorkflowStepError(f"Dependency installation failed: {result.error}", step_id="install-dependencies")
        return "Dependencies installed", {}

    async def _generate_or_modify_code(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._command(workflow, get_template(request.template).codegen, CODEGEN_TIMEOUT_MS)
        if not result.success:
            raise WorkflowStepError(f"Code generation failed: {result.error}", step_id="generate-or-modify-code")
        return "Code generation completed", {}

    async def _run_tests(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._command(workflow, get_template(request.template).test, TEST_TIMEOUT_MS)
        if not result.success:
            raise WorkflowStepError(f"Tests failed: {result.error}", step_id="run-tests")
        return "Tests passed", {}

    async def _build(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        if request.build_command:
            result = await self._op(
                workflow,
                "executeCommand",
                {
                    "command": request.build_command,
                    "cwd": workspace_path(self.workspace_root, workflow.resource_id),
                    "timeout_ms": BUILD_TIMEOUT_MS,
                },
            )
        else:
            result = await self._command(workflow, get_template(request.template).build, BUILD_TIMEOUT_MS)

        if not result.success:
            raise WorkflowStepError(f"Build failed: {result.error}", step_id="build")
        return "Application built successfully", {}

    async def _extract_artifacts(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        output_path = request.output_path or get_template(request.template).output_path
        result = await self._command(workflow, archive_argv(output_path), EXTRACT_TIMEOUT_MS)
        if not result.success:
            raise WorkflowStepError(f"Failed to create artifact archive: {result.error}", step_id="extract-artifacts")
        return "Build artifacts extracted", {"artifacts": {"build_output": ARTIFACT_ARCHIVE}}

    async def _start_application(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._op(workflow, "getStatus")
        if not result.success:
            raise WorkflowStepError(f"Application start failed: {result.error}", step_id="start-application")

        ref = result.data["ref"]
        return f"Application started in container {ref}", {"deployment_url": f"container://{ref}"}

    async def _verify_application(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        result = await self._op(workflow, "getStatus")
        if not result.success:
            raise WorkflowStepError(f"Verification failed: {result.error}", step_id="verify-application")

        status = result.data["status"]
        if status == "Failed":
            raise WorkflowStepError("Verification failed: container state is Failed", step_id="verify-application")
        return f"Application verified ({status})", {}

    async def _cleanup(self, workflow: Workflow, request: DeploymentRequest) -> StepOutcome:
        actions = await self._release(workflow)
        return "Cleanup completed" + (f": {', '.join(actions)}" if actions else ""), {}
