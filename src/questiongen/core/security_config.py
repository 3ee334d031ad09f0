"""Redaction rules for structured logs.

Provider credentials travel through settings and HTTP headers; any log
field whose name matches one of these keys is replaced with
``[REDACTED]`` before it reaches a handler.
"""

SENSITIVE_KEYS: set[str] = {
    # Provider credentials
    "api_key",
    "apikey",
    "secret",
    "password",
    "access_token",
    "refresh_token",
    "authorization",
    "bearer",
    "x-api-key",
    "x-goog-api-key",
    "anthropic-api-key",
    # Headers
    "cookie",
    "set-cookie",
    # Free text supplied by end users may carry personal data
    "email",
    "phone",
}


def is_sensitive_key(key: str) -> bool:
    """Check if a key should be considered sensitive and redacted.

    Args:
        key: The key name to check

    Returns:
        True if the key should be redacted, False otherwise
    """
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)
