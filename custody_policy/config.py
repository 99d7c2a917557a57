from pydantic import field_validator
from pydantic_settings import BaseSettings

from custody_policy.validation import validate_auth_method

ENVIRONMENTS = {
    "production": "https://api.ripple-custody.com",
    "sandbox": "https://sandbox-api.ripple-custody.com",
}
API_VERSION = "v1"


class Settings(BaseSettings):
    environment: str = "sandbox"
    base_url: str = ""
    tenant_id: str = ""

    # apiKey | oauth2 | jwt | mtls
    auth_method: str = "apiKey"
    api_key: str = ""
    api_secret: str = ""

    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    token_url: str = ""
    scope: str = "custody:read custody:write"

    jwt_signing_key: str = ""
    jwt_key_id: str = ""
    jwt_algorithm: str = "RS256"
    jwt_audience: str = ""

    # mTLS: paths to PEM files
    client_certificate: str = ""
    private_key: str = ""
    ca_certificate: str = ""

    timeout: float = 30.0
    retry_on_failure: bool = True
    max_retries: int = 3

    # Shared secret returned by the platform when the webhook was registered
    webhook_secret: str = ""

    # Optional key required on the /api/operations proxy (X-API-Key)
    service_api_key: str = ""

    requests_per_minute: int = 120

    @field_validator("auth_method")
    @classmethod
    def _known_auth_method(cls, v: str) -> str:
        return validate_auth_method(v)

    class Config:
        env_prefix = "CUSTODY_"
        env_file = ".env"
        extra = "ignore"


settings = Settings()
