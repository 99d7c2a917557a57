"""Async client for the Ripple Custody (Metaco Harmonize) REST API.

Features:
- X-Tenant-ID on every call plus one of four auth schemes: HMAC-signed API
  key, OAuth2 client credentials (token cached until a minute before
  expiry), self-signed JWT bearer, or mutual TLS
- Retries on transport errors and 5xx with capped exponential backoff
  (1s / 2s / 4s ... max 10s, no jitter); 4xx fail immediately
- Page-walking for list endpoints (page / pageSize=100)
"""

import asyncio
import json
import logging
import ssl
import time
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from custody_policy.auth import build_jwt, generate_hmac_signature, generate_timestamp, is_jwt_expired
from custody_policy.config import API_VERSION, ENVIRONMENTS, Settings
from custody_policy.errors import CustodyApiError, CustodyAuthError
from custody_policy.metrics import CUSTODY_API_DURATION, CUSTODY_API_REQUESTS_TOTAL
from custody_policy.models.policy import Policy
from custody_policy.services.policy_codec import parse_policy_from_api

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
TOKEN_REFRESH_MARGIN = 60  # seconds before expiry to renew an OAuth token or JWT


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

HEALTH = "/health"
POLICIES = "/policies"
POLICIES_VALIDATE = "/policies/validate"


def _seg(value: str) -> str:
    return quote(str(value), safe="")


def policy_path(policy_id: str, sub: str = "") -> str:
    path = f"{POLICIES}/{_seg(policy_id)}"
    return f"{path}/{sub}" if sub else path


# ---------------------------------------------------------------------------
# Configuration objects
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    @classmethod
    def from_settings(cls, retry_on_failure: bool, max_retries: int) -> "RetryPolicy":
        if not retry_on_failure:
            return cls(max_attempts=1)
        return cls(max_attempts=max_retries or 3)


@dataclass
class CustodyCredentials:
    tenant_id: str
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
    client_certificate: str = ""
    private_key: str = ""
    ca_certificate: str = ""

    @classmethod
    def from_settings(cls, s: Settings) -> "CustodyCredentials":
        return cls(
            tenant_id=s.tenant_id,
            auth_method=s.auth_method,
            api_key=s.api_key,
            api_secret=s.api_secret,
            oauth_client_id=s.oauth_client_id,
            oauth_client_secret=s.oauth_client_secret,
            token_url=s.token_url,
            scope=s.scope,
            jwt_signing_key=s.jwt_signing_key,
            jwt_key_id=s.jwt_key_id,
            jwt_algorithm=s.jwt_algorithm,
            jwt_audience=s.jwt_audience,
            client_certificate=s.client_certificate,
            private_key=s.private_key,
            ca_certificate=s.ca_certificate,
        )


def _error_from_response(response: httpx.Response) -> CustodyApiError:
    message = response.reason_phrase or "Unknown error occurred"
    details: dict = {}
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message", message)
            details = error.get("details") or {}
            if error.get("code"):
                details = {**details, "code": error["code"]}
        elif isinstance(body.get("message"), str):
            message = body["message"]
    return CustodyApiError(message, status_code=response.status_code, details=details)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CustodyClient:
    """Thin async wrapper around the custody REST API."""

    def __init__(
        self,
        credentials: CustodyCredentials,
        base_url: str = "",
        environment: str = "sandbox",
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self.base_url = (base_url or ENVIRONMENTS.get(environment) or ENVIRONMENTS["sandbox"]).rstrip("/")
        self.retry = retry or RetryPolicy()
        self._access_token: str | None = None
        self._token_expiry = 0.0
        self._jwt: str | None = None

        client_kwargs: dict = {"timeout": timeout}
        if transport is not None:
            client_kwargs["transport"] = transport
        if credentials.auth_method == "mtls":
            client_kwargs["verify"] = self._mtls_context()
        self._http = httpx.AsyncClient(**client_kwargs)

    @classmethod
    def from_settings(cls, s: Settings, **kwargs) -> "CustodyClient":
        return cls(
            CustodyCredentials.from_settings(s),
            base_url=s.base_url,
            environment=s.environment,
            timeout=s.timeout,
            retry=RetryPolicy.from_settings(s.retry_on_failure, s.max_retries),
            **kwargs,
        )

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/{API_VERSION}"

    async def __aenter__(self) -> "CustodyClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- auth ---------------------------------------------------------------

    def _mtls_context(self) -> ssl.SSLContext:
        creds = self.credentials
        if not creds.client_certificate or not creds.private_key:
            raise CustodyAuthError("Client certificate and private key are required for mTLS authentication")
        context = ssl.create_default_context(cafile=creds.ca_certificate or None)
        context.load_cert_chain(creds.client_certificate, creds.private_key)
        return context

    async def _get_oauth_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        creds = self.credentials
        if not creds.oauth_client_id or not creds.oauth_client_secret:
            raise CustodyAuthError("OAuth client ID and secret are required for OAuth authentication")

        token_url = creds.token_url or f"{self.base_url}/oauth/token"
        response = await self._http.post(token_url, data={
            "grant_type": "client_credentials",
            "client_id": creds.oauth_client_id,
            "client_secret": creds.oauth_client_secret,
            "scope": creds.scope,
        })
        if response.status_code >= 400:
            raise _error_from_response(response)

        payload = response.json()
        self._access_token = payload["access_token"]
        expires_in = float(payload.get("expires_in", 3600))
        self._token_expiry = time.monotonic() + expires_in - TOKEN_REFRESH_MARGIN
        logger.info("OAuth token refreshed, expires in %ds", int(expires_in))
        return self._access_token

    async def _auth_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        creds = self.credentials
        headers = {
            "X-Tenant-ID": creds.tenant_id,
            "Content-Type": "application/json",
        }

        if creds.auth_method == "apiKey":
            if not creds.api_key or not creds.api_secret:
                raise CustodyAuthError("API key and secret are required for API key authentication")
            timestamp = generate_timestamp()
            headers["X-API-Key"] = creds.api_key
            headers["X-API-Timestamp"] = timestamp
            headers["X-API-Signature"] = generate_hmac_signature(
                creds.api_secret, timestamp, method, path, body
            )
        elif creds.auth_method == "oauth2":
            headers["Authorization"] = f"Bearer {await self._get_oauth_token()}"
        elif creds.auth_method == "jwt":
            if not creds.jwt_signing_key or not creds.jwt_key_id:
                raise CustodyAuthError("JWT signing key and key ID are required for JWT authentication")
            if not self._jwt or is_jwt_expired(self._jwt, leeway=TOKEN_REFRESH_MARGIN):
                self._jwt = build_jwt(
                    creds.jwt_signing_key,
                    creds.jwt_key_id,
                    creds.tenant_id,
                    audience=creds.jwt_audience or self.base_url,
                    algorithm=creds.jwt_algorithm,
                )
            headers["Authorization"] = f"Bearer {self._jwt}"
        # mtls: identity is the client certificate on the connection

        return headers

    # -- requests -----------------------------------------------------------

    async def request(
        self,
        method: str,
        endpoint: str,
        body: dict | None = None,
        query: dict | None = None,
    ):
        """Send one API call with retries. Returns the decoded JSON body."""
        method = method.upper()
        url = f"{self.api_url}{endpoint}"
        # Serialize once so the signature covers exactly the bytes sent
        content = json.dumps(body, separators=(",", ":")) if body else ""
        params = {k: v for k, v in (query or {}).items() if v is not None} or None

        last_error: CustodyApiError | None = None
        attempts = max(1, self.retry.max_attempts)

        for attempt in range(1, attempts + 1):
            headers = await self._auth_headers(method, f"/{API_VERSION}{endpoint}", content)
            start = time.monotonic()
            try:
                response = await self._http.request(
                    method, url, content=content or None, params=params, headers=headers
                )
            except httpx.HTTPError as exc:
                CUSTODY_API_REQUESTS_TOTAL.labels(method=method, status="error").inc()
                last_error = CustodyApiError(str(exc) or type(exc).__name__, status_code=503)
                logger.warning(
                    "Custody API %s %s attempt=%d/%d failed: %s",
                    method, endpoint, attempt, attempts, last_error.message,
                )
            else:
                CUSTODY_API_REQUESTS_TOTAL.labels(method=method, status=str(response.status_code)).inc()
                CUSTODY_API_DURATION.labels(method=method).observe(time.monotonic() - start)

                if response.status_code < 400:
                    logger.info(
                        "Custody API %s %s -> %d (attempt %d)",
                        method, endpoint, response.status_code, attempt,
                    )
                    return response.json() if response.content else {}

                last_error = _error_from_response(response)
                if response.status_code < 500:
                    logger.warning(
                        "Custody API %s %s -> %d: %s",
                        method, endpoint, response.status_code, last_error.message,
                    )
                    raise last_error

                logger.warning(
                    "Custody API %s %s attempt=%d/%d -> %d",
                    method, endpoint, attempt, attempts, response.status_code,
                )

            if attempt < attempts:
                await asyncio.sleep(self.retry.delay_for(attempt))

        raise last_error

    async def get(self, endpoint: str, query: dict | None = None):
        return await self.request("GET", endpoint, query=query)

    async def post(self, endpoint: str, body: dict | None = None):
        return await self.request("POST", endpoint, body=body)

    async def put(self, endpoint: str, body: dict | None = None):
        return await self.request("PUT", endpoint, body=body)

    async def patch(self, endpoint: str, body: dict | None = None):
        return await self.request("PATCH", endpoint, body=body)

    async def delete(self, endpoint: str):
        return await self.request("DELETE", endpoint)

    async def request_all_items(
        self,
        method: str,
        endpoint: str,
        body: dict | None = None,
        query: dict | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Walk every page of a list endpoint, stopping early at limit."""
        items: list[dict] = []
        page = 1

        while True:
            response = await self.request(
                method, endpoint, body, {**(query or {}), "page": page, "pageSize": PAGE_SIZE}
            )
            if isinstance(response, list):
                items.extend(response)
                break

            items.extend(response.get("data") or [])
            if limit and len(items) >= limit:
                return items[:limit]

            pagination = response.get("pagination")
            if not pagination or page >= pagination.get("totalPages", 0):
                break
            page += 1

        return items[:limit] if limit else items

    # -- policy resource ----------------------------------------------------

    async def health(self) -> dict:
        return await self.get(HEALTH)

    async def get_policy(self, policy_id: str) -> dict:
        return await self.get(policy_path(policy_id))

    async def fetch_policy(self, policy_id: str) -> Policy:
        """Fetch a policy and decode it into the engine's model."""
        data = await self.get_policy(policy_id)
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return parse_policy_from_api(data)

