"""
Authorization Gateway

Every privileged action passes through execute_operation. The gateway is the
only component that holds a compute backend; subjects present a grant-backed
SessionContext and get an OperationResult back.

Pipeline (first failure wins, later stages never run):
    0. context shape      -> AUTHORIZATION_ERROR (issuer not consulted)
    1. issuer.validate    -> AUTHORIZATION_ERROR "invalid session"
    2. operation schema   -> INVALID_OPERATION_SCHEMA
    3. grant permission   -> AUTHORIZATION_ERROR
    4. command policy     -> POLICY_VIOLATION
    5. backend dispatch   -> BACKEND_ERROR / TIMEOUT
    6. cleanup bookkeeping for created/stopped containers
    7. per-subject history (always)

INVARIANTS:
    - execute_operation never raises
    - no backend call happens unless stages 0-4 all pass
"""

import asyncio
import logging
import re
import shlex
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from capgate.errors import (
    AuthorizationError,
    BackendError,
    CapgateError,
    InvalidOperationSchema,
    OperationTimeoutError,
    PolicyViolation,
)

from .backend import ComputeBackend, ContainerSpec
from .cleanup import CleanupManager, CleanupTask
from .operations import (
    OperationName,
    OperationRequest,
    OperationResult,
    OperationSpec,
    SessionContext,
    validate_operation_parameters,
)
from .policy import CommandPolicy, sanitize_argument, workspace_path

logger = logging.getLogger(__name__)

INVALID_SESSION = "invalid session"

CONTAINER_CLEANUP_PRIORITY = 10

TEMPLATE_IMAGES: Dict[str, str] = {
    "node": "node:20-bookworm",
    "python": "python:3.12-slim",
    "dotnet": "mcr.microsoft.com/dotnet/sdk:8.0",
    "java": "maven:3.9-eclipse-temurin-21",
    "go": "golang:1.22",
}


def derive_container_name(subject_id: str, resource_id: str, task_id: str) -> str:
    """Deterministic backend-safe name: lowercase, [a-z0-9-], at most 63 chars."""
    raw = f"cg-{subject_id[:8]}-{resource_id[:8]}-{task_id[:8]}".lower()
    name = re.sub(r"[^a-z0-9-]", "-", raw)
    name = re.sub(r"-{2,}", "-", name).strip("-")
    return name[:63].rstrip("-")


class AuthorizationGateway:
    """
    Authorizes and executes operations on behalf of grant holders.

    Containers are tracked per (subject, resource), so any live grant on the
    same resource (e.g. a narrower recovery grant) reaches the same container.
    """

    def __init__(
        self,
        issuer,
        backend: ComputeBackend,
        policy: Optional[CommandPolicy] = None,
        cleanup: Optional[CleanupManager] = None,
        workspace_root: str = "/workspace",
        command_timeout_ms: int = 30000,
        default_image: str = "node:20-bookworm",
    ):
        self.issuer = issuer
        self.backend = backend
        self.policy = policy or CommandPolicy(workspace_root=workspace_root)
        self.cleanup = cleanup or CleanupManager()
        self.workspace_root = workspace_root
        self.command_timeout_ms = command_timeout_ms
        self.default_image = default_image

        self._containers: Dict[Tuple[str, str], str] = {}
        self._history: Dict[str, List[OperationResult]] = defaultdict(list)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def execute_operation(self, context: Any, request: Any) -> OperationResult:
        """Authorize and run one operation. Failures come back as results."""
        operation = _operation_name(request)

        # 0. Context shape
        try:
            session = context if isinstance(context, SessionContext) else SessionContext.model_validate(context)
        except (PydanticValidationError, TypeError):
            logger.warning(f"Rejected malformed session context for {operation}")
            result = self._failure(operation, AuthorizationError(INVALID_SESSION))
            self._record(_raw_subject(context), result)
            return result

        result = await self._authorize_and_run(session, operation, request)
        self._record(session.subject_id, result)

        logger.info(
            "%s by %s:%s:%s -> %s",
            operation,
            session.subject_id,
            session.resource_id,
            session.task_id,
            "ok" if result.success else result.error_code,
        )
        return result

    async def _authorize_and_run(self, session: SessionContext, operation: str, request: Any) -> OperationResult:
        # 1. Grant
        valid = await self.issuer.validate(
            session.subject_id, session.resource_id, session.task_id, session.session_secret
        )
        if not valid:
            return self._failure(operation, AuthorizationError(INVALID_SESSION))

        # 2. Operation schema
        try:
            parsed = request if isinstance(request, OperationRequest) else OperationRequest.model_validate(request)
            spec = validate_operation_parameters(parsed.operation, parsed.parameters)
        except PydanticValidationError as e:
            return self._failure(operation, InvalidOperationSchema(f"Malformed operation request ({e.error_count()} error(s))"))
        except InvalidOperationSchema as e:
            return self._failure(operation, e)

        # 3. Grant permission
        allowed = self.issuer.allowed_operations(session.subject_id, session.resource_id, session.task_id)
        if spec.permission not in allowed:
            return self._failure(operation, AuthorizationError(f"Operation not permitted by grant: {operation}"))

        # 4. Command policy
        decision = self.policy.evaluate(spec.name, parsed.parameters)
        if not decision.allowed:
            return self._failure(operation, PolicyViolation(decision.reason))

        # 5-6. Dispatch
        try:
            return await self._dispatch(session, spec, parsed.parameters)
        except CapgateError as e:
            return self._failure(operation, e)
        except asyncio.TimeoutError:
            return self._failure(operation, OperationTimeoutError(f"{operation} timed out"))
        except Exception as e:
            logger.error(f"Backend failure during {operation}: {e}")
            return self._failure(operation, BackendError(str(e)))

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch(self, session: SessionContext, spec: OperationSpec, params: Dict[str, Any]) -> OperationResult:
        name = spec.name

        if name == OperationName.CREATE_CONTAINER.value:
            return await self._create_container(session, params)

        if name == OperationName.EXECUTE_COMMAND.value:
            command = self._render_command(params)
            return await self._run_command(session, name, command, params.get("timeout_ms"))

        if spec.is_git:
            command = self._git_command(session, name, params)
            return await self._run_command(session, name, command, None)

        ref = self._container_ref(session)

        if name == OperationName.GET_STATUS.value:
            status = await self.backend.get_status(ref)
            return OperationResult(success=True, operation=name, data={"ref": ref, "status": status})

        if name == OperationName.GET_LOGS.value:
            logs = await self.backend.get_logs(ref, params.get("tail"))
            return OperationResult(success=True, operation=name, data={"ref": ref, "logs": logs})

        if name == OperationName.STOP_CONTAINER.value:
            stopped = await self.backend.stop(ref)
            self._forget_container(session, ref)
            return OperationResult(success=True, operation=name, data={"ref": ref, "stopped": stopped})

        raise InvalidOperationSchema(f"Unknown operation: {name}")

    async def _create_container(self, session: SessionContext, params: Dict[str, Any]) -> OperationResult:
        image = params.get("image") or TEMPLATE_IMAGES.get(params.get("template", ""), self.default_image)
        spec = ContainerSpec(
            name=derive_container_name(session.subject_id, session.resource_id, session.task_id),
            image=image,
            cpu=float(params.get("cpu", 1.0)),
            memory_gb=float(params.get("memory_gb", 2.0)),
            environment_variables={str(k): str(v) for k, v in params.get("environment_variables", {}).items()},
            labels={
                "subject": session.subject_id,
                "resource": session.resource_id,
                "task": session.task_id,
            },
        )
        info = await self.backend.create_container(spec)

        self._containers[(session.subject_id, session.resource_id)] = info.ref
        self.cleanup.register(
            CleanupTask(
                id=_cleanup_id(info.ref),
                name=f"container {info.ref}",
                cleanup=lambda ref=info.ref: self.backend.stop(ref),
                priority=CONTAINER_CLEANUP_PRIORITY,
                tags=[session.subject_id, session.resource_id],
            )
        )
        return OperationResult(success=True, operation=OperationName.CREATE_CONTAINER.value, data=info.to_dict())

    async def _run_command(
        self,
        session: SessionContext,
        operation: str,
        command: str,
        timeout_ms: Optional[int],
    ) -> OperationResult:
        ref = self._container_ref(session)
        timeout_ms = timeout_ms or self.command_timeout_ms
        try:
            output = await asyncio.wait_for(
                self.backend.execute_command(ref, command, timeout_ms),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"Command timed out after {timeout_ms}ms")

        if output.exit_code == 0:
            return OperationResult(success=True, operation=operation, data=output.to_dict())

        return OperationResult(
            success=False,
            operation=operation,
            data=output.to_dict(),
            error=output.stderr.strip() or f"Command exited with code {output.exit_code}",
            error_code=BackendError.code,
        )

    # =========================================================================
    # Command rendering
    # =========================================================================

    def _render_command(self, params: Dict[str, Any]) -> str:
        cwd = params.get("cwd")
        if "argv" in params:
            return self.policy.render_argv(params["argv"], cwd)
        if cwd:
            return f"cd {shlex.quote(cwd)} && {params['command']}"
        return params["command"]

    def _git_command(self, session: SessionContext, operation: str, params: Dict[str, Any]) -> str:
        workspace = shlex.quote(workspace_path(self.workspace_root, session.resource_id))

        if operation == OperationName.GIT_CLONE.value:
            branch = params.get("branch")
            branch_arg = f" --branch {shlex.quote(branch)}" if branch else ""
            return f"git clone{branch_arg} {shlex.quote(params['repository'].strip())} {workspace}"

        prefix = f"cd {workspace} && "
        branch = shlex.quote(params.get("branch") or "main")

        if operation == OperationName.GIT_PULL.value:
            return f"{prefix}git pull origin {branch}"
        if operation == OperationName.GIT_COMMIT.value:
            return f"{prefix}git add -A && git commit -m {sanitize_argument(params['message'])}"
        if operation == OperationName.GIT_PUSH.value:
            return f"{prefix}git push origin {branch}"
        if operation == OperationName.GIT_BRANCH.value:
            return f"{prefix}git checkout -b {shlex.quote(params['name'])}"
        if operation == OperationName.GIT_STATUS.value:
            return f"{prefix}git status"

        raise InvalidOperationSchema(f"Unknown git operation: {operation}")

    # =========================================================================
    # Containers
    # =========================================================================

    def _container_ref(self, session: SessionContext) -> str:
        return self._containers.get(
            (session.subject_id, session.resource_id),
            derive_container_name(session.subject_id, session.resource_id, session.task_id),
        )

    def _forget_container(self, session: SessionContext, ref: str) -> None:
        self._containers.pop((session.subject_id, session.resource_id), None)
        self.cleanup.unregister(_cleanup_id(ref))

    def get_container_ref(self, subject_id: str, resource_id: str) -> Optional[str]:
        return self._containers.get((subject_id, resource_id))

    # =========================================================================
    # History
    # =========================================================================

    def _failure(self, operation: str, error: CapgateError) -> OperationResult:
        return OperationResult(
            success=False,
            operation=operation,
            error=str(error),
            error_code=error.code,
        )

    def _record(self, subject_id: Optional[str], result: OperationResult) -> None:
        if subject_id:
            self._history[subject_id].append(result)

    def get_history(self, subject_id: str, limit: Optional[int] = None) -> List[OperationResult]:
        """Results for a subject, oldest first."""
        history = list(self._history.get(subject_id, []))
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history


def _cleanup_id(ref: str) -> str:
    return f"container:{ref}"


def _operation_name(request: Any) -> str:
    if isinstance(request, OperationRequest):
        return request.operation
    if isinstance(request, dict) and isinstance(request.get("operation"), str):
        return request["operation"]
    return "unknown"


def _raw_subject(context: Any) -> Optional[str]:
    if isinstance(context, dict) and isinstance(context.get("subject_id"), str):
        return context["subject_id"]
    return None
