"""
Login Throttling Service

WHY: Prevent brute-force password attacks by limiting failed login attempts.
After too many failures, the account is temporarily locked.

- Tracks failed attempts per email
- Lockout after MAX_FAILED_ATTEMPTS failures within LOCKOUT_WINDOW
- Uses the security_events table for tracking
"""

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent, User
from storefront.time_utils import utcnow


MAX_FAILED_ATTEMPTS = 10  # Lock after 10 failed attempts
LOCKOUT_WINDOW = timedelta(minutes=15)  # Within 15 minutes
LOCKOUT_DURATION = timedelta(minutes=15)  # Lockout for 15 minutes


def _normalize(identifier: str) -> str:
    return (identifier or "").strip().lower()


def get_recent_failed_attempts(identifier: str) -> int:
    """Count LOGIN_FAILED events for this email within LOCKOUT_WINDOW."""
    cutoff = utcnow() - LOCKOUT_WINDOW
    return db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == _normalize(identifier),
        SecurityEvent.occurred_at >= cutoff
    ).count()


def is_account_locked(identifier: str) -> tuple[bool, int | None]:
    """
    Check if an account is currently locked due to too many failed attempts.

    Returns:
    - (True, seconds_remaining) if locked
    - (False, None) if not locked
    """
    if get_recent_failed_attempts(identifier) < MAX_FAILED_ATTEMPTS:
        return False, None

    most_recent = db.session.query(SecurityEvent).filter(
        SecurityEvent.event_type == "LOGIN_FAILED",
        SecurityEvent.action == _normalize(identifier)
    ).order_by(SecurityEvent.occurred_at.desc()).first()

    if most_recent:
        lockout_end = most_recent.occurred_at + LOCKOUT_DURATION
        now = utcnow()
        if now < lockout_end:
            return True, int((lockout_end - now).total_seconds())

    return False, None


def record_failed_attempt(
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    reason: str = "Invalid credentials"
) -> int:
    """
    Record a failed login attempt.

    Returns the total number of recent failed attempts.
    """
    email = _normalize(identifier)
    user = db.session.query(User).filter_by(email=email).first()

    db.session.add(SecurityEvent(
        user_id=user.id if user else None,
        event_type="LOGIN_FAILED",
        resource="/api/auth/login",
        action=email,
        success=False,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    ))
    db.session.commit()

    return get_recent_failed_attempts(email)


def record_successful_login(
    user_id: int,
    identifier: str,
    ip_address: str | None = None,
    user_agent: str | None = None
) -> None:
    """Record a successful login for the audit trail."""
    db.session.add(SecurityEvent(
        user_id=user_id,
        event_type="LOGIN_SUCCESS",
        resource="/api/auth/login",
        action=_normalize(identifier),
        success=True,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    ))
    db.session.commit()
