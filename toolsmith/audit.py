"""Privacy-preserving audit trail for authentication attempts."""
from __future__ import annotations

import hashlib
import logging
from typing import Optional

from .database import Database
from .request_context import mask_ip_for_audit

logger = logging.getLogger("toolsmith.audit")

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


def hash_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()


def mask_email(email: Optional[str]) -> str:
    """Render ``email`` for log lines as ``local@...``."""

    if not email:
        return "<none>"
    local, _, _ = email.partition("@")
    return f"{local}@..."


def audit_login_attempt(
    database: Database,
    *,
    status: str,
    ip: Optional[str],
    user_agent: Optional[str],
    email: Optional[str] = None,
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Record one login attempt; failures to write are logged, never raised."""

    meta = {
        "status": status,
        "reason": reason,
        "ip_cidr": mask_ip_for_audit(ip),
        "user_agent_hash": hash_user_agent(user_agent),
        "email_normalized": email.strip().lower() if email else None,
    }
    try:
        database.record_usage_event(user_id, "auth", meta)
    except Exception:
        logger.exception("Failed to record %s login attempt for %s", status, mask_email(email))


__all__ = [
    "STATUS_FAILURE",
    "STATUS_SUCCESS",
    "audit_login_attempt",
    "hash_user_agent",
    "mask_email",
]
