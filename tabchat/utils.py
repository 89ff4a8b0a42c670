"""
Identity helpers.

The auth collaborator (OTP sign-in) lives outside this service; it hands
callers a user id and, when AUTH_SECRET is shared, an HMAC of that id.
"""

import hmac
import hashlib
import logging
from typing import Optional

from tabchat.errors import Unauthenticated

logger = logging.getLogger(__name__)


def compute_signature(user_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``user_id`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), user_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_user_signature(user_id: str, signature: str, secret: str) -> bool:
    """
    Check an X-User-Signature value against the caller's user id.

    Args:
        user_id: Value of the X-User-Id header
        signature: Hex HMAC from the X-User-Signature header
        secret: AUTH_SECRET shared with the auth collaborator

    Returns:
        True if the signature matches
    """
    expected = compute_signature(user_id, secret).encode("utf-8")
    valid = hmac.compare_digest(expected, signature.strip().lower().encode("utf-8"))
    if not valid:
        logger.debug(f"Signature mismatch for user {user_id}")
    return valid


def require_user_id(user_id: Optional[str]) -> str:
    """Return the acting user id or raise Unauthenticated."""
    if not user_id or not user_id.strip():
        raise Unauthenticated("no caller identity available")
    return user_id
