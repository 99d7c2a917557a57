"""Exception types raised by the policy engine and the custody client.

Business-rule outcomes (deny, require approval, limit exceeded) are never
raised; they are returned as values. These exceptions cover malformed input
and transport failures only.
"""


class PolicyError(Exception):
    """Base class for policy-engine errors."""


class MalformedRuleError(PolicyError):
    """A rule cannot be evaluated, e.g. its ``matches`` pattern does not compile."""

    def __init__(self, message: str, rule_id: str | None = None):
        super().__init__(message)
        self.rule_id = rule_id


class InvalidAmountError(PolicyError, ValueError):
    """An amount or limit is not a parseable decimal."""


class PolicyFormatError(PolicyError, ValueError):
    """A policy or transaction payload does not have the expected shape."""


STATUS_DESCRIPTIONS = {
    400: "Bad request - please check your input parameters",
    401: "Authentication failed - please check your credentials",
    403: "Access forbidden - you do not have permission for this operation",
    404: "Resource not found",
    409: "Conflict - the resource may already exist or be in an invalid state",
    429: "Rate limit exceeded - please try again later",
    500: "Internal server error - please try again later",
    503: "Service unavailable - Ripple Custody may be under maintenance",
}
DEFAULT_DESCRIPTION = "An error occurred while communicating with Ripple Custody API"


class CustodyApiError(Exception):
    """HTTP-level failure talking to the custody platform."""

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    @property
    def description(self) -> str:
        return STATUS_DESCRIPTIONS.get(self.status_code, DEFAULT_DESCRIPTION)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "description": self.description,
            "status_code": self.status_code,
            "details": self.details,
        }


class CustodyAuthError(CustodyApiError):
    """Credentials required by the configured auth method are missing."""

    def __init__(self, message: str):
        super().__init__(message, status_code=401)
