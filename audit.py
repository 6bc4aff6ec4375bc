"""
Audit logging for administrative actions on money.

Usage:
    audit_entry(
        session,
        action="payout.force_release",
        actor="ops@example.com",
        resource_type="payout",
        resource_id=str(entry.id),
        details={"reason": "manual review cleared"},
        request=request,  # Optional FastAPI Request for IP/UA
    )

The entry is added to the caller's session so it commits (or rolls back)
with the change it describes.
"""

import json
import logging
from typing import Optional, Dict, Any

from fastapi import Request
from sqlmodel.ext.asyncio.session import AsyncSession

from config import utcnow
from models import AuditLog

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {'password', 'token', 'secret', 'api_key', 'admin_token', 'x-admin-token'}


def audit_entry(
    session: AsyncSession,
    action: str,
    actor: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    """Stage an audit row on the session without committing."""
    ip_address = None
    user_agent = None
    if request is not None:
        ip_address = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent", "")[:500]

    entry = AuditLog(
        timestamp=utcnow(),
        actor=actor,
        ip_address=ip_address,
        user_agent=user_agent,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=json.dumps(redact_sensitive(details), default=str) if details else None,
        success=success,
        error_message=error_message,
    )
    session.add(entry)
    return entry


async def audit_failure(
    session_factory,
    action: str,
    actor: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    error_message: Optional[str] = None,
    request: Optional[Request] = None,
) -> None:
    """
    Record a rejected administrative action in its own session.

    The caller's transaction has already been rolled back at this point.
    This never raises: failures are logged but not propagated.
    """
    try:
        async with session_factory() as session:
            audit_entry(
                session,
                action,
                actor=actor,
                resource_type=resource_type,
                resource_id=resource_id,
                success=False,
                error_message=error_message,
                request=request,
            )
            await session.commit()
    except Exception as e:
        logger.error(f"[AUDIT ERROR] Failed to log {action}: {e}")


def redact_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redact sensitive fields from audit details."""

    def _redact(obj):
        if isinstance(obj, dict):
            return {
                k: '[REDACTED]' if k.lower() in SENSITIVE_KEYS else _redact(v)
                for k, v in obj.items()
            }
        if isinstance(obj, list):
            return [_redact(item) for item in obj]
        return obj

    return _redact(data)
