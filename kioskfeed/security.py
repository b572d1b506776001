import html
import re
import secrets
from typing import Optional

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def validate_token(
    auth_header: Optional[str],
    query_token: Optional[str],
    expected_token: str,
) -> bool:
    """Check a bearer token from the Authorization header or ``?token=``.

    A well-formed ``Bearer`` header takes precedence over the query
    parameter.  Comparison is constant-time.
    """
    if not expected_token:
        return False

    if auth_header:
        match = _BEARER_RE.match(auth_header.strip())
        if match:
            return secrets.compare_digest(
                match.group(1).encode("utf-8"), expected_token.encode("utf-8")
            )

    if query_token:
        return secrets.compare_digest(
            query_token.encode("utf-8"), expected_token.encode("utf-8")
        )

    return False


def generate_analysis_id() -> str:
    return secrets.token_hex(16)


def sanitize_string(value: str) -> str:
    """Escape ``& < > " '`` for safe display."""
    return html.escape(value, quote=True)
