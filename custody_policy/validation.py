"""Input validation utilities."""

import re

TENANT_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,64}$")

AUTH_METHODS = {"apiKey", "oauth2", "jwt", "mtls"}


def is_valid_tenant_id(tenant_id: str) -> bool:
    return bool(TENANT_ID_RE.match(tenant_id))


def validate_auth_method(method: str) -> str:
    if method not in AUTH_METHODS:
        raise ValueError(
            f"Invalid auth method: {method}. "
            f"Valid methods: {', '.join(sorted(AUTH_METHODS))}"
        )
    return method


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """Mask all but the first and last visible_chars characters for logging."""
    if len(value) <= visible_chars * 2:
        return "*" * len(value)
    hidden = len(value) - visible_chars * 2
    return f"{value[:visible_chars]}{'*' * hidden}{value[-visible_chars:]}"
