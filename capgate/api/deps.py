"""
API Dependencies

Runtime access and role checks for the v1 routes.
"""

from fastapi import Depends, HTTPException, Request

from capgate.api.auth.context import AuthContextV1, get_auth_context
from capgate.api.contracts.v1 import RoleEnum
from capgate.wiring import Runtime


def get_runtime(request: Request) -> Runtime:
    """The Runtime the app was created with."""
    return request.app.state.runtime


def require_operator(auth: AuthContextV1 = Depends(get_auth_context)) -> AuthContextV1:
    """Enforce operator or admin role."""
    if RoleEnum(auth.role) not in (RoleEnum.OPERATOR, RoleEnum.ADMIN):
        raise HTTPException(
            status_code=403,
            detail="Operation requires operator or admin privileges",
        )
    return auth
