"""
Auth Context

Strict JWT validation for the HTTP surface. The JWT ``sub`` is the subject
every grant, operation and workflow is scoped to.
"""

import logging
from typing import Any, Dict, Literal, Optional

import jwt
from fastapi import Header, HTTPException
from pydantic import BaseModel, ConfigDict

from capgate.config import config

logger = logging.getLogger(__name__)

ROLES = ("viewer", "operator", "admin")


class AuthContextV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str
    role: Literal["viewer", "operator", "admin"]
    issuer: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    auth_type: Literal["jwt", "header"]
    claims_subset: Dict[str, Any] = {}


def _normalize_role(value: Optional[str]) -> str:
    role = (value or "viewer").strip().lower()
    return role if role in ROLES else "viewer"


def get_auth_context(
    authorization: Optional[str] = Header(default=None),
    x_subject_id: Optional[str] = Header(default=None, alias="X-Subject-Id"),
    x_role: Optional[str] = Header(default=None, alias="X-Role"),
) -> AuthContextV1:
    """Extract and validate the caller identity from a bearer JWT or the dev fallback."""
    # 1. JWT
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]

        if not config.auth.jwt_secret:
            logger.error("AUTH_JWT_SECRET is not configured.")
            raise HTTPException(status_code=500, detail="Configuration error")

        try:
            options = {
                "verify_signature": True,
                "verify_exp": True,
                "verify_iss": bool(config.auth.jwt_issuer),
                "verify_aud": bool(config.auth.jwt_audience),
            }
            claims = jwt.decode(
                token,
                key=config.auth.jwt_secret,
                algorithms=["HS256"],
                issuer=config.auth.jwt_issuer,
                audience=config.auth.jwt_audience,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Expired JWT token.")
            raise HTTPException(status_code=401, detail="Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid JWT token: {e}")
            raise HTTPException(status_code=401, detail="Invalid token")

        subject = claims.get("sub")
        if not subject:
            raise HTTPException(status_code=401, detail="JWT missing subject (sub)")

        return AuthContextV1(
            subject=subject,
            role=_normalize_role(claims.get("role")),
            issuer=claims.get("iss"),
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
            auth_type="jwt",
            claims_subset={
                k: v for k, v in claims.items() if k not in ("role", "sub", "iss", "iat", "exp", "aud")
            },
        )

    # 2. Dev-only header fallback
    if not authorization and config.auth.allow_insecure_headers and config.auth.env == "dev":
        if not x_subject_id or not x_subject_id.strip():
            raise HTTPException(status_code=401, detail="Missing authentication")

        return AuthContextV1(
            subject=x_subject_id.strip(),
            role=_normalize_role(x_role),
            auth_type="header",
        )

    # 3. Fail closed
    raise HTTPException(status_code=401, detail="Missing or invalid authentication")
