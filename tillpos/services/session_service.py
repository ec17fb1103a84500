# Overview: Bearer session tokens; issues, validates and revokes them.

"""
Session Token Management

Tokens are random 32-byte values handed to the client once; only their
SHA-256 hash is stored. A session carries the business it was issued for
and keeps it for its whole lifetime.

Timeouts come from config:
- SESSION_TTL_HOURS: absolute lifetime
- SESSION_IDLE_MINUTES: inactivity window; an idle session is revoked on
  its next use
"""
from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import Employee, SessionToken
from ..time_utils import utcnow
from .access_service import CallerContext, caller_from_employee


@dataclass
class SessionContext:
    session: SessionToken
    caller: CallerContext


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(employee_id: int) -> tuple[SessionToken, str]:
    """
    Create a session for an active employee of an active business.

    Returns (session_record, plaintext_token). The plaintext is not stored.
    """
    employee = db.session.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError(f"Employee {employee_id} not found")
    if not employee.is_active:
        raise ValidationError("Employee is not active")
    if employee.business is None or not employee.business.is_active:
        raise ValidationError("Business is not active")

    plaintext_token = generate_token()
    now = utcnow()
    session = SessionToken(
        employee_id=employee.id,
        business_id=employee.business_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=current_app.config.get("SESSION_TTL_HOURS", 24)),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    current_app.logger.info("Session %s issued for employee %s", session.id, employee.id)
    return session, plaintext_token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()
    current_app.logger.info("Session %s revoked: %s", session.id, reason)


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to its session and caller.

    Returns None when the token is unknown, revoked or expired, when it has
    been idle too long, or when its employee or business was deactivated.
    A successful validation refreshes last_used_at.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()
    if session is None:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    idle_limit = timedelta(minutes=current_app.config.get("SESSION_IDLE_MINUTES", 120))
    if now - session.last_used_at > idle_limit:
        _revoke(session, "Idle timeout")
        return None

    employee = session.employee
    if employee is None or not employee.is_active:
        _revoke(session, "Employee deactivated")
        return None
    if session.business is None or not session.business.is_active:
        _revoke(session, "Business deactivated")
        return None

    session.last_used_at = now
    db.session.commit()

    caller = caller_from_employee(employee)
    # Tenant comes from the session record, not the (mutable) employee row
    if caller.business_id != session.business_id:
        _revoke(session, "Business changed")
        return None
    return SessionContext(session=session, caller=caller)


def revoke_session(session_id: int, reason: str = "Revoked") -> bool:
    session = db.session.get(SessionToken, session_id)
    if session is None or session.is_revoked:
        return False
    _revoke(session, reason)
    return True
