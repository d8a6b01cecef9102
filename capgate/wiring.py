"""
Runtime Wiring

Constructs the issuer, gateway, recovery agent and orchestrator from config.

Production: backend from CAPGATE_BACKEND_FACTORY ("module:callable")
Testing: InMemoryComputeBackend (default, or injected)
"""

import importlib
import logging
from dataclasses import dataclass
from typing import Optional

from capgate.config import Config, config as default_config
from capgate.gateway.backend import ComputeBackend, InMemoryComputeBackend
from capgate.gateway.cleanup import CleanupManager
from capgate.gateway.gateway import AuthorizationGateway
from capgate.gateway.policy import CommandPolicy
from capgate.orchestration.events import EventBus
from capgate.orchestration.orchestrator import DeploymentOrchestrator
from capgate.recovery.agent import FailureRecoveryAgent
from capgate.trust.issuer import CapabilityIssuer
from capgate.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """One fully wired set of components."""
    config: Config
    issuer: CapabilityIssuer
    backend: ComputeBackend
    cleanup: CleanupManager
    gateway: AuthorizationGateway
    recovery: FailureRecoveryAgent
    events: EventBus
    orchestrator: DeploymentOrchestrator

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.issuer.stop_sweeper()
        await self.cleanup.run_all()


def get_backend(cfg: Config) -> ComputeBackend:
    """
    Build the compute backend named by ``cfg.backend_factory``.

    Raises:
        ValueError: If the factory reference is malformed
    """
    if not cfg.backend_factory:
        logger.warning("No CAPGATE_BACKEND_FACTORY configured, using InMemoryComputeBackend")
        return InMemoryComputeBackend()

    module_name, sep, attr = cfg.backend_factory.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid backend factory '{cfg.backend_factory}', expected 'module:callable'")

    factory = getattr(importlib.import_module(module_name), attr)
    backend = factory()
    logger.info(f"Using compute backend {type(backend).__name__}")
    return backend


def build_runtime(cfg: Optional[Config] = None, backend: Optional[ComputeBackend] = None) -> Runtime:
    cfg = cfg or default_config
    backend = backend if backend is not None else get_backend(cfg)

    issuer = CapabilityIssuer(sweep_interval_seconds=cfg.issuer.sweep_interval_seconds)
    cleanup = CleanupManager()
    policy = CommandPolicy(
        trusted_repository_pattern=cfg.gateway.trusted_repository_pattern,
        workspace_root=cfg.gateway.workspace_root,
    )
    gateway = AuthorizationGateway(
        issuer,
        backend,
        policy=policy,
        cleanup=cleanup,
        workspace_root=cfg.gateway.workspace_root,
        command_timeout_ms=cfg.gateway.command_timeout_ms,
        default_image=cfg.gateway.default_image,
    )
    recovery = FailureRecoveryAgent(gateway, workspace_root=cfg.gateway.workspace_root)
    events = EventBus()
    orchestrator = DeploymentOrchestrator(
        issuer,
        gateway,
        recovery=recovery,
        events=events,
        grant_duration_minutes=cfg.orchestrator.grant_duration_minutes,
        recovery_grant_duration_minutes=cfg.orchestrator.recovery_grant_duration_minutes,
        workspace_root=cfg.gateway.workspace_root,
        retry_policy=RetryPolicy(
            max_attempts=cfg.orchestrator.retry_max_attempts,
            backoff_ms=cfg.orchestrator.retry_backoff_ms,
            max_delay_ms=cfg.orchestrator.retry_max_delay_ms,
        ),
    )

    return Runtime(
        config=cfg,
        issuer=issuer,
        backend=backend,
        cleanup=cleanup,
        gateway=gateway,
        recovery=recovery,
        events=events,
        orchestrator=orchestrator,
    )
