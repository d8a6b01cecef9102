"""
capgate Configuration

Environment configuration for the issuer, gateway, orchestrator and API.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class IssuerConfig:
    """Capability issuer configuration."""
    sweep_interval_seconds: float = float(os.getenv("CAPGATE_GRANT_SWEEP_SECONDS", "60"))


@dataclass
class GatewayConfig:
    """Authorization gateway configuration."""
    trusted_repository_pattern: str = os.getenv(
        "CAPGATE_TRUSTED_REPO_PATTERN",
        r"https://github\.com/worksquares/[A-Za-z0-9._-]+/?",
    )
    workspace_root: str = os.getenv("CAPGATE_WORKSPACE_ROOT", "/workspace")
    command_timeout_ms: int = int(os.getenv("CAPGATE_COMMAND_TIMEOUT_MS", "30000"))
    default_image: str = os.getenv("CAPGATE_DEFAULT_IMAGE", "node:20-bookworm")


@dataclass
class OrchestratorConfig:
    """Deployment orchestrator configuration."""
    grant_duration_minutes: int = int(os.getenv("CAPGATE_DEPLOY_GRANT_MINUTES", "120"))
    recovery_grant_duration_minutes: int = int(os.getenv("CAPGATE_RECOVERY_GRANT_MINUTES", "10"))
    retry_max_attempts: int = int(os.getenv("CAPGATE_RETRY_MAX_ATTEMPTS", "3"))
    retry_backoff_ms: int = int(os.getenv("CAPGATE_RETRY_BACKOFF_MS", "2000"))
    retry_max_delay_ms: int = int(os.getenv("CAPGATE_RETRY_MAX_DELAY_MS", "30000"))


@dataclass
class APIConfig:
    """FastAPI configuration."""
    host: str = os.getenv("API_HOST", "0.0.0.0")
    port: int = int(os.getenv("API_PORT", "8000"))
    debug: bool = os.getenv("API_DEBUG", "false").lower() == "true"


@dataclass
class AuthConfig:
    """JWT validation settings for the HTTP surface."""
    jwt_secret: Optional[str] = os.getenv("AUTH_JWT_SECRET") or None
    jwt_issuer: Optional[str] = os.getenv("AUTH_JWT_ISSUER") or None
    jwt_audience: Optional[str] = os.getenv("AUTH_JWT_AUDIENCE") or None
    env: str = os.getenv("AUTH_ENV", "prod")
    allow_insecure_headers: bool = os.getenv("AUTH_ALLOW_INSECURE_HEADERS", "false").lower() == "true"


@dataclass
class Config:
    """Main configuration container."""
    issuer: IssuerConfig
    gateway: GatewayConfig
    orchestrator: OrchestratorConfig
    api: APIConfig
    auth: AuthConfig

    # "module:callable" returning a ComputeBackend; empty means in-memory
    backend_factory: str = os.getenv("CAPGATE_BACKEND_FACTORY", "")

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            issuer=IssuerConfig(),
            gateway=GatewayConfig(),
            orchestrator=OrchestratorConfig(),
            api=APIConfig(),
            auth=AuthConfig(),
        )


# Global config instance
config = Config.from_env()
