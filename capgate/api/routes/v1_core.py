"""
v1 API Routes

Grants, operations and deployments, all scoped to the authenticated subject.
Another subject's resources answer 404, never 403.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from capgate.api.auth.context import AuthContextV1, get_auth_context
from capgate.api.contracts.v1 import (
    DeploymentAcceptedV1,
    DeploymentRequestV1,
    DeploymentV1,
    GrantRequestV1,
    GrantResponseV1,
    OperationHistoryV1,
    OperationRequestV1,
    OperationResultV1,
    RevokeResponseV1,
)
from capgate.api.deps import get_runtime, require_operator
from capgate.errors import ValidationError, WorkflowNotFoundError, WorkflowStateError
from capgate.orchestration.workflow import Workflow
from capgate.wiring import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["core"])


def _owned_workflow(runtime: Runtime, workflow_id: str, subject: str) -> Workflow:
    workflow = runtime.orchestrator.find_workflow(workflow_id)
    if workflow is None or workflow.subject_id != subject:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return workflow


def _deployment_view(runtime: Runtime, workflow: Workflow) -> DeploymentV1:
    recovery = runtime.orchestrator.get_recovery(workflow.id)
    return DeploymentV1(
        workflow=workflow.to_dict(),
        recovery=recovery.model_dump() if recovery else None,
    )


# =============================================================================
# Grants
# =============================================================================


@router.post("/grants", response_model=GrantResponseV1, status_code=201)
async def create_grant(
    request: GrantRequestV1,
    auth: AuthContextV1 = Depends(require_operator),
    runtime: Runtime = Depends(get_runtime),
):
    """Mint a grant for the caller on a resource/task."""
    try:
        grant = await runtime.issuer.create_grant(
            auth.subject,
            request.resource_id,
            request.task_id,
            request.scopes,
            request.duration_minutes,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"error_code": e.code, "message": str(e)})

    return GrantResponseV1(**grant.to_dict(include_secret=True))


@router.delete("/grants/{resource_id}/{task_id}", response_model=RevokeResponseV1)
async def revoke_grant(
    resource_id: str,
    task_id: str,
    auth: AuthContextV1 = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke one of the caller's grants. Idempotent."""
    revoked = await runtime.issuer.revoke(auth.subject, resource_id, task_id)
    return RevokeResponseV1(revoked=revoked)


# =============================================================================
# Operations
# =============================================================================


@router.post("/operations", response_model=OperationResultV1)
async def execute_operation(
    request: OperationRequestV1,
    auth: AuthContextV1 = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Run an operation through the gateway. Failures are returned, not raised."""
    context = {
        "subject_id": auth.subject,
        "resource_id": request.resource_id,
        "task_id": request.task_id,
        "session_secret": request.session_secret,
    }
    result = await runtime.gateway.execute_operation(
        context, {"operation": request.operation, "parameters": request.parameters}
    )
    return OperationResultV1.from_result(result)


@router.get("/operations/history", response_model=OperationHistoryV1)
async def operation_history(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    auth: AuthContextV1 = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """The caller's operation results, oldest first."""
    items = runtime.gateway.get_history(auth.subject, limit)
    return OperationHistoryV1(
        subject_id=auth.subject,
        items=[OperationResultV1.from_result(r) for r in items],
    )


# =============================================================================
# Deployments
# =============================================================================


@router.post("/deployments", response_model=DeploymentAcceptedV1, status_code=202)
async def start_deployment(
    request: DeploymentRequestV1,
    auth: AuthContextV1 = Depends(require_operator),
    runtime: Runtime = Depends(get_runtime),
):
    """Start a deployment; progress via GET or the event stream."""
    try:
        workflow = await runtime.orchestrator.start_deployment(
            {"subject_id": auth.subject, **request.model_dump()}
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"error_code": e.code, "message": str(e)})

    return DeploymentAcceptedV1(workflow_id=workflow.id, status=workflow.status.value)


@router.get("/deployments/{workflow_id}", response_model=DeploymentV1)
async def get_deployment(
    workflow_id: str,
    auth: AuthContextV1 = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    workflow = _owned_workflow(runtime, workflow_id, auth.subject)
    return _deployment_view(runtime, workflow)


@router.post("/deployments/{workflow_id}/cancel", response_model=DeploymentV1)
async def cancel_deployment(
    workflow_id: str,
    auth: AuthContextV1 = Depends(require_operator),
    runtime: Runtime = Depends(get_runtime),
):
    workflow = _owned_workflow(runtime, workflow_id, auth.subject)
    try:
        await runtime.orchestrator.cancel_workflow(workflow.id)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found")
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail={"error_code": e.code, "message": str(e)})

    return _deployment_view(runtime, workflow)


@router.get("/deployments/{workflow_id}/events")
async def stream_deployment_events(
    workflow_id: str,
    auth: AuthContextV1 = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Server-Sent Events for one deployment.

    Starts with a ``status`` snapshot, then relays workflow events until the
    workflow's run is over. No replay of earlier events.
    """
    workflow = _owned_workflow(runtime, workflow_id, auth.subject)

    async def event_generator():
        # Nothing is registered on the bus until the response starts iterating
        stream = None if runtime.orchestrator.is_finished(workflow_id) else runtime.events.stream(workflow_id)
        try:
            yield {
                "event": "status",
                "data": json.dumps({"workflow_id": workflow.id, "status": workflow.status.value}),
            }
            if stream is None:
                return
            async for event in stream:
                yield {
                    "event": event.type.value,
                    "id": str(event.sequence),
                    "data": json.dumps(event.to_dict(), default=str),
                }
        finally:
            if stream is not None:
                stream.close()

    return EventSourceResponse(event_generator())
