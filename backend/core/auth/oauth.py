"""
OAuth2 clients for the supported mailbox providers.

- Google: authorization-code flow against the Google token endpoint (httpx)
- Microsoft: refresh-token and device-code flows through MSAL

Both return a TokenGrant: {access_token, refresh_token?, expires_in, scope}.

Usage:
    client = GoogleOAuthClient()
    url = client.authorization_url(credentials, state)
    grant = await client.exchange_code(credentials, code)
    grant = await client.refresh(credentials, refresh_token)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import msal

from backend.core.database.models import utcnow
from backend.core.errors import AuthConfigError, ProviderFetchError, TokenExpiredError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
]

MICROSOFT_AUTHORITY_HOST = "https://login.microsoftonline.com"
# offline_access, openid and profile are reserved by MSAL and always requested
MICROSOFT_SCOPES = ["Mail.Read", "Mail.ReadWrite", "User.Read"]

# Device flow responses that mean "keep polling"
DEVICE_FLOW_PENDING_ERRORS = {"authorization_pending", "slow_down"}
# Device flow responses that end the flow for good
DEVICE_FLOW_TERMINAL_ERRORS = {"expired_token", "code_expired", "authorization_declined", "bad_verification_code", "access_denied"}


@dataclass
class OAuthClientCredentials:
    """Client id/secret pair used against a provider's token endpoint."""
    client_id: str
    client_secret: Optional[str] = None
    tenant_id: str = "common"
    redirect_uri: Optional[str] = None
    source: str = "system"  # user | system

    def __repr__(self):
        # Never print the secret
        return f"OAuthClientCredentials(client_id={self.client_id!r}, source={self.source!r})"


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: List[str] = field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenGrant":
        scope = data.get("scope") or []
        if isinstance(scope, str):
            scope = scope.split()
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=list(scope),
        )

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Absolute expiry (naive UTC), or None when the provider gave no lifetime."""
        if self.expires_in is None:
            return None
        return (now or utcnow()) + timedelta(seconds=self.expires_in)


class GoogleOAuthClient:
    """Authorization-code flow for Gmail."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.http = http_client or httpx.AsyncClient(timeout=timeout)

    def authorization_url(self, credentials: OAuthClientCredentials, state: str) -> str:
        """Consent URL requesting offline access (so a refresh token is issued)."""
        params = {
            "client_id": credentials.client_id,
            "redirect_uri": credentials.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, credentials: OAuthClientCredentials, code: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthConfigError: If Google rejects the code or the client
            ProviderFetchError: On transport failure
        """
        data = await self._token_request(credentials, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": credentials.redirect_uri,
        })
        if "error" in data:
            raise AuthConfigError(
                f"Google rejected the authorization code: {data.get('error_description') or data['error']}",
                user_message="Google authorization failed. Please try connecting again.",
            )
        return TokenGrant.from_response(data)

    async def refresh(self, credentials: OAuthClientCredentials, refresh_token: str) -> TokenGrant:
        """
        Refresh an access token.

        Google does not rotate refresh tokens, so the grant usually carries none.

        Raises:
            TokenExpiredError: If the refresh token was rejected (invalid_grant)
            ProviderFetchError: On transport failure
        """
        data = await self._token_request(credentials, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        if "error" in data:
            logger.warning(f"Google token refresh rejected: {data['error']}")
            raise TokenExpiredError(f"Google refresh rejected: {data.get('error_description') or data['error']}")
        return TokenGrant.from_response(data)

    async def _token_request(self, credentials: OAuthClientCredentials, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(payload, client_id=credentials.client_id)
        if credentials.client_secret:
            payload["client_secret"] = credentials.client_secret

        try:
            response = await self.http.post(GOOGLE_TOKEN_URL, data=payload)
        except httpx.HTTPError as e:
            raise ProviderFetchError(f"Google token endpoint unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code in (400, 401):
            return {"error": data.get("error", "invalid_grant"), "error_description": data.get("error_description")}
        if response.status_code != 200:
            raise ProviderFetchError(f"Google token endpoint returned HTTP {response.status_code}")
        return data


class MicrosoftOAuthClient:
    """
    Refresh and device-code flows for Outlook through MSAL.

    MSAL is synchronous; calls run in a worker thread.
    """

    def __init__(
        self,
        authority_host: str = MICROSOFT_AUTHORITY_HOST,
        app_factory: Optional[Callable[[OAuthClientCredentials, bool], Any]] = None,
    ):
        """
        Args:
            authority_host: Login host (tenant is appended)
            app_factory: Builds an MSAL application for (credentials, confidential)
        """
        self.authority_host = authority_host.rstrip("/")
        self.app_factory = app_factory or self._build_app

    def _build_app(self, credentials: OAuthClientCredentials, confidential: bool):
        authority = f"{self.authority_host}/{credentials.tenant_id or 'common'}"
        if confidential:
            return msal.ConfidentialClientApplication(
                client_id=credentials.client_id,
                client_credential=credentials.client_secret,
                authority=authority,
            )
        return msal.PublicClientApplication(client_id=credentials.client_id, authority=authority)

    async def refresh(self, credentials: OAuthClientCredentials, refresh_token: str) -> TokenGrant:
        """
        Refresh an access token (confidential client when a secret is known).

        Raises:
            TokenExpiredError: If Microsoft rejects the refresh token
            ProviderFetchError: On transport failure
        """
        app = self.app_factory(credentials, bool(credentials.client_secret))
        try:
            result = await asyncio.to_thread(
                app.acquire_token_by_refresh_token,
                refresh_token,
                scopes=MICROSOFT_SCOPES,
            )
        except Exception as e:
            raise ProviderFetchError(f"Microsoft token endpoint unreachable: {e}") from e

        if not result or "error" in result:
            error = (result or {}).get("error", "no_result")
            logger.warning(f"Microsoft token refresh rejected: {error}")
            raise TokenExpiredError(f"Microsoft refresh rejected: {(result or {}).get('error_description') or error}")

        grant = TokenGrant.from_response(result)
        if grant.refresh_token and grant.refresh_token != refresh_token:
            logger.info("Microsoft rotated the refresh token")
        return grant

    async def initiate_device_flow(self, credentials: OAuthClientCredentials) -> Dict[str, Any]:
        """
        Start a device-code flow.

        Returns:
            MSAL flow dict (user_code, verification_uri, message, expires_in, interval, ...)

        Raises:
            AuthConfigError: If Microsoft refuses to start the flow
        """
        app = self.app_factory(credentials, False)
        try:
            flow = await asyncio.to_thread(app.initiate_device_flow, scopes=MICROSOFT_SCOPES)
        except Exception as e:
            raise ProviderFetchError(f"Microsoft device flow could not be started: {e}") from e

        if "user_code" not in flow:
            raise AuthConfigError(f"Failed to create device flow: {flow.get('error_description') or flow.get('error')}")
        return flow

    async def poll_device_flow(self, credentials: OAuthClientCredentials, flow: Dict[str, Any]) -> Optional[TokenGrant]:
        """
        Poll a device-code flow once.

        Returns:
            TokenGrant once the user completed sign-in, None while still pending

        Raises:
            TokenExpiredError: If the code expired or the user declined
            AuthConfigError: On any other device flow error
        """
        app = self.app_factory(credentials, False)
        try:
            # exit_condition stops MSAL's internal loop after a single poll
            result = await asyncio.to_thread(
                app.acquire_token_by_device_flow,
                flow,
                exit_condition=lambda flow: True,
            )
        except Exception as e:
            raise ProviderFetchError(f"Microsoft device flow poll failed: {e}") from e

        if result and "access_token" in result:
            return TokenGrant.from_response(result)

        error = (result or {}).get("error", "no_result")
        if error in DEVICE_FLOW_PENDING_ERRORS:
            return None
        if error in DEVICE_FLOW_TERMINAL_ERRORS:
            raise TokenExpiredError(
                f"Device flow ended: {error}",
                user_message="The sign-in code expired or was declined. Please start again.",
            )
        raise AuthConfigError(f"Device flow failed: {(result or {}).get('error_description') or error}")
