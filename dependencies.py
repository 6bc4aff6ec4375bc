"""
Shared FastAPI dependencies.

The settlement context is built once at startup and kept on app.state;
routes receive it through get_context so tests can override it the same
way they override get_session.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from exceptions import AuthenticationError
from services.context import SettlementContext


def get_context(request: Request) -> SettlementContext:
    ctx = getattr(request.app.state, "settlement_context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Settlement context not initialised")
    return ctx


def get_session_factory(request: Request):
    return request.app.state.session_factory


async def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(None),
) -> str:
    """
    Dependency that requires the static admin token.

    Raises HTTPException(503) when no admin token is configured.
    Raises AuthenticationError (401) when the header is missing or wrong.
    """
    expected = get_context(request).config.admin_api_token
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AuthenticationError("Invalid admin token")
    return x_admin_token
