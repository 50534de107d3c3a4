"""
Token lifecycle: hand out a currently-valid access token for an account.

Tokens expiring within the refresh buffer are refreshed through the provider's
OAuth client, using per-user credentials when the user configured their own
OAuth app and the system-wide credentials otherwise.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from backend.core.database import EmailAccount, session_scope, utcnow
from backend.core.database.repository import AccountRepository
from backend.core.email.providers.base import Provider
from backend.core.errors import AuthConfigError, TokenExpiredError
from .oauth import GoogleOAuthClient, MicrosoftOAuthClient, OAuthClientCredentials

logger = logging.getLogger(__name__)


class TokenLifecycle:
    """Refreshes account tokens on demand and persists the result."""

    def __init__(
        self,
        session_factory,
        vault,
        google: GoogleOAuthClient,
        microsoft: MicrosoftOAuthClient,
        settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.google = google
        self.microsoft = microsoft
        self.settings = settings
        self.clock = clock
        self.refresh_buffer = timedelta(seconds=settings.token_refresh_buffer_seconds)

    def needs_refresh(self, account: EmailAccount) -> bool:
        if account.token_expires_at is None:
            return False
        return self.clock() + self.refresh_buffer >= account.token_expires_at

    async def ensure_valid(self, account: EmailAccount) -> EmailAccount:
        """
        Return the account with a usable access token, refreshing if needed.

        Args:
            account: Stored account (tokens are vault blobs)

        Returns:
            The same account when no refresh was needed, else the updated row

        Raises:
            TokenExpiredError: No refresh token, or the provider rejected it
            AuthConfigError: No OAuth credentials configured for the provider
        """
        if not self.needs_refresh(account):
            return account

        refresh_token = self.vault.decrypt(account.refresh_token)
        if not refresh_token:
            raise TokenExpiredError(f"Account {account.email_address} has no refresh token")

        credentials = self.resolve_credentials(account.user_id, account.provider)
        client = self.google if Provider(account.provider) == Provider.GMAIL else self.microsoft

        logger.info(f"Refreshing {account.provider} token for {account.email_address} (source={credentials.source})")
        grant = await client.refresh(credentials, refresh_token)

        rotated = grant.refresh_token if grant.refresh_token and grant.refresh_token != refresh_token else None
        with session_scope(self.session_factory) as db:
            updated = AccountRepository(db).update_tokens(
                account.id,
                access_token=self.vault.encrypt(grant.access_token),
                token_expires_at=grant.expires_at(self.clock()),
                refresh_token=self.vault.encrypt(rotated) if rotated else None,
            )

        logger.info(f"Token refreshed for {account.email_address} (expires {updated.token_expires_at})")
        return updated

    def resolve_credentials(self, user_id: str, provider: str) -> OAuthClientCredentials:
        """
        OAuth client credentials for a user's provider.

        Per-user integration first, then system settings.

        Raises:
            AuthConfigError: If neither is configured
        """
        provider = Provider(provider)

        with session_scope(self.session_factory) as db:
            integration = AccountRepository(db).get_integration(user_id, provider.value)
            stored = dict(integration.credentials or {}) if integration else {}

        if stored.get("client_id"):
            return OAuthClientCredentials(
                client_id=stored["client_id"],
                client_secret=self.vault.decrypt(stored.get("client_secret")),
                tenant_id=stored.get("tenant_id") or self.settings.ms_graph_tenant_id,
                redirect_uri=stored.get("redirect_uri") or self.settings.gmail_redirect_uri,
                source="user",
            )

        system = self._system_credentials(provider)
        if system is None:
            raise AuthConfigError(f"{provider.value} OAuth credentials not configured for user {user_id}")
        return system

    def _system_credentials(self, provider: Provider) -> Optional[OAuthClientCredentials]:
        if provider == Provider.GMAIL:
            if not (self.settings.gmail_client_id and self.settings.gmail_client_secret):
                return None
            return OAuthClientCredentials(
                client_id=self.settings.gmail_client_id,
                client_secret=self.settings.gmail_client_secret,
                redirect_uri=self.settings.gmail_redirect_uri,
            )

        if not self.settings.ms_graph_client_id:
            return None
        return OAuthClientCredentials(
            client_id=self.settings.ms_graph_client_id,
            client_secret=self.settings.ms_graph_client_secret,
            tenant_id=self.settings.ms_graph_tenant_id,
        )
