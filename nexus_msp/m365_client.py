"""Microsoft 365 Graph helper utilities."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import msal
import requests


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
AUTHORITY_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}"
REQUEST_TIMEOUT = 30
TOKEN_REFRESH_BUFFER = timedelta(seconds=60)
DEFAULT_TOKEN_LIFETIME = 3600
USER_SELECT = "id,displayName,mail,assignedLicenses"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class M365ClientError(RuntimeError):
    """Base exception for Microsoft 365 client operations."""


class M365ConfigurationError(M365ClientError):
    """Raised when a required Microsoft 365 credential is missing."""

    def __init__(self, missing_key: str) -> None:
        super().__init__(
            f"Missing required Microsoft 365 configuration value: {missing_key}. "
            "Provide tenant_id, client_id, and client_secret."
        )
        self.missing_key = missing_key


class M365AuthError(M365ClientError):
    """Raised when the identity provider rejects the client-credentials grant."""

    def __init__(self, error: str, description: str) -> None:
        super().__init__(f"Failed to obtain Microsoft Graph token: {error} - {description}")
        self.error = error
        self.description = description


class M365GraphError(M365ClientError):
    """Raised when the Microsoft Graph API returns a non-2xx response."""

    def __init__(self, status_code: int, body: str, code: str = "GraphError", message: str = "") -> None:
        super().__init__(f"Microsoft Graph request failed ({status_code}): {code} - {message or body}")
        self.status_code = status_code
        self.body = body
        self.code = code
        self.message = message or body


@dataclass(frozen=True)
class M365Credentials:
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def signature(self) -> tuple:
        return (self.tenant_id, self.client_id, self.client_secret)

    def require(self) -> None:
        for key in ("tenant_id", "client_id", "client_secret"):
            if not getattr(self, key):
                raise M365ConfigurationError(key)


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: datetime


class TokenCache:
    """Holds one bearer token and decides freshness against an injected clock."""

    def __init__(self, clock: Clock = utc_now, buffer: timedelta = TOKEN_REFRESH_BUFFER) -> None:
        self._clock = clock
        self._buffer = buffer
        self._value: Optional[CachedToken] = None

    def get(self) -> Optional[str]:
        cached = self._value
        if cached and cached.expires_at - self._buffer > self._clock():
            return cached.token
        return None

    def store(self, token: str, expires_in: Optional[int]) -> CachedToken:
        lifetime = expires_in if expires_in else DEFAULT_TOKEN_LIFETIME
        self._value = CachedToken(token=token, expires_at=self._clock() + timedelta(seconds=int(lifetime)))
        return self._value

    def clear(self) -> None:
        self._value = None


def _default_app_factory(credentials: M365Credentials) -> Any:
    return msal.ConfidentialClientApplication(
        client_id=credentials.client_id,
        client_credential=credentials.client_secret,
        authority=AUTHORITY_TEMPLATE.format(tenant_id=credentials.tenant_id),
    )


class TokenProvider:
    """Acquires client-credentials tokens for Graph and caches them.

    Concurrent cache misses each run their own grant; the grant is idempotent
    so no coalescing is done.
    """

    def __init__(
        self,
        credentials: M365Credentials,
        clock: Clock = utc_now,
        app_factory: Callable[[M365Credentials], Any] = _default_app_factory,
    ) -> None:
        self.credentials = credentials
        self.cache = TokenCache(clock)
        self._app_factory = app_factory
        self._app: Any = None

    def get_token(self) -> str:
        self.credentials.require()
        cached = self.cache.get()
        if cached:
            return cached

        if self._app is None:
            self._app = self._app_factory(self.credentials)
        result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE) or {}
        if "access_token" not in result:
            raise M365AuthError(
                error=str(result.get("error", "token_error")),
                description=str(result.get("error_description", "Unable to acquire Graph token.")),
            )

        token = str(result["access_token"])
        self.cache.store(token, result.get("expires_in"))
        return token


class GraphClient:
    """Lightweight Microsoft Graph client with transparent pagination."""

    def __init__(
        self,
        token_provider: TokenProvider,
        session: Optional[requests.Session] = None,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self._tokens = token_provider
        self._session = session or requests.Session()
        self._timeout = timeout

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                       #
    # ------------------------------------------------------------------ #
    def request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("http") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._tokens.get_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        response = self._session.request(
            method,
            url,
            timeout=self._timeout,
            headers=headers,
            **kwargs,
        )
        if response.status_code == 204:
            return {}

        if not 200 <= response.status_code < 300:
            body = response.text or ""
            try:
                payload = response.json()
                error = payload.get("error", {}) if isinstance(payload, dict) else {}
                code = error.get("code", "GraphError")
                message = error.get("message", body)
            except ValueError:
                code = "GraphError"
                message = body or "Unknown Graph error."
            raise M365GraphError(response.status_code, body, code, message)

        return response.json()

    def fetch_all_pages(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """Follow ``@odata.nextLink`` until exhausted, concatenating ``value`` arrays.

        Pages are requested one after another. Any failure propagates and the
        items gathered so far are dropped.
        """

        results: List[Dict[str, Any]] = []
        url: Optional[str] = path
        request_params = params
        while url:
            page = self.request("GET", url, params=request_params) if request_params else self.request("GET", url)
            results.extend(page.get("value") or [])
            url = page.get("@odata.nextLink")
            # the continuation link already carries the query string
            request_params = None
        return results

    # ------------------------------------------------------------------ #
    # Directory helpers                                                  #
    # ------------------------------------------------------------------ #
    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        return self.fetch_all_pages("/subscribedSkus")

    def list_users(self) -> List[Dict[str, Any]]:
        return self.fetch_all_pages("/users", params={"$select": USER_SELECT})


__all__ = [
    "CachedToken",
    "GraphClient",
    "M365AuthError",
    "M365ClientError",
    "M365ConfigurationError",
    "M365Credentials",
    "M365GraphError",
    "TokenCache",
    "TokenProvider",
    "utc_now",
]
