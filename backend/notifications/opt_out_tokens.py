"""
Token generation and validation for one-click email opt-out links.

Uses cryptographically signed tokens with expiry. Tokens carry the recipient
email and need no database storage; a validated token is recorded in the
email_opt_outs table, which the recipient selector consults.
"""

import hashlib
import os
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from shared.db import get_supabase_client

OPT_OUT_SALT = "email-opt-out"
DEFAULT_MAX_AGE_DAYS = 90


def opt_out_enabled() -> bool:
    """True when a signing secret is configured."""
    return bool(os.getenv("OPT_OUT_SECRET_KEY"))


def _get_serializer() -> URLSafeTimedSerializer:
    """
    Get configured serializer for token generation and validation.

    Raises:
        ValueError: If OPT_OUT_SECRET_KEY environment variable not set
    """
    secret_key = os.getenv("OPT_OUT_SECRET_KEY")
    if not secret_key:
        raise ValueError("OPT_OUT_SECRET_KEY environment variable must be set.")

    return URLSafeTimedSerializer(
        secret_key,
        salt=OPT_OUT_SALT,
        signer_kwargs={"digest_method": hashlib.sha256},
    )


def generate_opt_out_token(email: str) -> str:
    """
    Generate a signed opt-out token for a recipient email.

    Raises:
        ValueError: If OPT_OUT_SECRET_KEY not configured
    """
    serializer = _get_serializer()
    return serializer.dumps(email.strip().lower())


def validate_opt_out_token(
    token: str, max_age_days: int = DEFAULT_MAX_AGE_DAYS
) -> Optional[str]:
    """
    Validate an opt-out token and extract the email.

    Never raises exceptions - returns None for any invalid token.

    Examples:
        >>> token = generate_opt_out_token("driver@example.com")
        >>> validate_opt_out_token(token)
        'driver@example.com'

        >>> validate_opt_out_token("invalid-token") is None
        True
    """
    try:
        serializer = _get_serializer()
        max_age_seconds = max_age_days * 24 * 60 * 60
        return serializer.loads(token, max_age=max_age_seconds, salt=OPT_OUT_SALT)
    except (BadSignature, SignatureExpired, ValueError, TypeError):
        return None


def build_opt_out_url(email: str, base_url: str) -> str:
    token = generate_opt_out_token(email)
    return f"{base_url.rstrip('/')}/email-preferences?token={token}"


def record_opt_out(token: str, reason: str = "unsubscribe_link") -> Optional[str]:
    """
    Add the token's email to the opt-out list.

    Returns:
        The opted-out email, or None if the token is invalid
    """
    email = validate_opt_out_token(token)
    if not email:
        return None

    supabase = get_supabase_client()
    try:
        supabase.table("email_opt_outs").insert(
            {"email": email, "reason": reason}, returning="minimal"
        ).execute()
    except Exception as e:
        error_str = str(e).lower()
        # Already opted out
        if "duplicate" not in error_str and "unique" not in error_str:
            raise

    return email
