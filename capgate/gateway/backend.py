"""
Compute Backend

Interface to the shared compute backend the gateway fronts. Only the
gateway holds a backend; subjects never see it or its credentials.

- ComputeBackend: abstract interface (container lifecycle + command execution)
- InMemoryComputeBackend: process-local fake for tests and local runs
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from capgate.errors import BackendError

logger = logging.getLogger(__name__)


@dataclass
class ContainerSpec:
    """What to provision for a resource."""
    name: str
    image: str
    cpu: float = 1.0
    memory_gb: float = 1.5
    environment_variables: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerInfo:
    """A provisioned compute resource."""
    ref: str
    status: str
    ip: Optional[str] = None
    fqdn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CommandOutput:
    """Result of running a command in a compute resource."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ComputeBackend(ABC):
    """
    Abstract compute backend.

    Implementations may raise BackendError (or any exception; the gateway
    converts both into failed results).
    """

    @abstractmethod
    async def create_container(self, spec: ContainerSpec) -> ContainerInfo:
        """Provision a compute resource."""

    @abstractmethod
    async def execute_command(self, ref: str, command: str, timeout_ms: int) -> CommandOutput:
        """Run a shell command inside the resource."""

    @abstractmethod
    async def get_status(self, ref: str) -> str:
        """Current resource state (e.g. "Running", "Stopped", "Failed")."""

    @abstractmethod
    async def get_logs(self, ref: str, tail: Optional[int] = None) -> str:
        """Recent resource logs."""

    @abstractmethod
    async def stop(self, ref: str) -> bool:
        """Stop the resource. Returns True if it was running."""


ScriptedResult = Union[CommandOutput, BaseException]


class InMemoryComputeBackend(ComputeBackend):
    """
    In-memory backend.

    Records every call in ``calls`` as (method, args) tuples. Command results
    can be scripted by substring with ``script_command``; the first matching
    script wins, otherwise the command exits 0. Whole methods can be made to
    raise with ``fail_method``. ``command_delay`` simulates slow commands.
    """

    def __init__(self, command_delay: float = 0.0):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.command_delay = command_delay
        self._scripts: List[Tuple[str, ScriptedResult]] = []
        self._method_failures: Dict[str, BaseException] = {}

    # =========================================================================
    # Scripting
    # =========================================================================

    def script_command(self, substring: str, result: ScriptedResult) -> None:
        """Return (or raise) ``result`` for commands containing ``substring``."""
        self._scripts.append((substring, result))

    def fail_method(self, method: str, error: Optional[BaseException] = None) -> None:
        """Make ``method`` raise ``error`` (BackendError by default)."""
        self._method_failures[method] = error or BackendError(f"{method} failed")

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        failure = self._method_failures.get(method)
        if failure is not None:
            raise failure

    # =========================================================================
    # ComputeBackend
    # =========================================================================

    async def create_container(self, spec: ContainerSpec) -> ContainerInfo:
        self._record("create_container", spec)
        self.containers[spec.name] = {"spec": spec, "status": "Running", "logs": []}
        logger.debug(f"Created container {spec.name}")
        return ContainerInfo(
            ref=spec.name,
            status="Running",
            ip="10.0.0.1",
            fqdn=f"{spec.name}.local",
        )

    async def execute_command(self, ref: str, command: str, timeout_ms: int) -> CommandOutput:
        self._record("execute_command", ref, command, timeout_ms)
        if self.command_delay:
            await asyncio.sleep(self.command_delay)

        container = self.containers.get(ref)
        if container is not None:
            container["logs"].append(f"$ {command}")

        for substring, result in self._scripts:
            if substring in command:
                if isinstance(result, BaseException):
                    raise result
                return result

        return CommandOutput(exit_code=0, stdout="", stderr="")

    async def get_status(self, ref: str) -> str:
        self._record("get_status", ref)
        container = self.containers.get(ref)
        if container is None:
            raise BackendError(f"Container not found: {ref}")
        return container["status"]

    async def get_logs(self, ref: str, tail: Optional[int] = None) -> str:
        self._record("get_logs", ref, tail)
        container = self.containers.get(ref)
        if container is None:
            raise BackendError(f"Container not found: {ref}")
        lines = container["logs"]
        if tail:
            lines = lines[-tail:]
        return "\n".join(lines)

    async def stop(self, ref: str) -> bool:
        self._record("stop", ref)
        container = self.containers.get(ref)
        if container is None or container["status"] == "Stopped":
            return False
        container["status"] = "Stopped"
        return True
