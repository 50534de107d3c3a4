"""
Account Manager - Connecting and disconnecting mailbox accounts

Gmail accounts connect through the OAuth authorization-code flow:
    url, state = manager.start_authorization(user_id)
    account = await manager.complete_authorization(state, code)   # from the redirect

Outlook accounts connect through the device-code flow, polled by the caller:
    start = await manager.start_device_flow(user_id)               # show start.user_code
    outcome = await manager.poll_device_flow(start.poll_handle)    # repeat every start.interval s

Pending authorizations live in a TTLStore owned by the manager instance.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union
import logging

from backend.core.auth.oauth import OAuthClientCredentials, TokenGrant
from backend.core.auth.vault import generate_secure_token
from backend.core.database import EmailAccount, session_scope
from backend.core.database.repository import AccountRepository
from backend.core.email.providers.base import Provider
from backend.core.errors import ProviderFetchError, TokenExpiredError
from backend.core.ttl_store import TTLStore

logger = logging.getLogger(__name__)

DEFAULT_FLOW_TTL_SECONDS = 900
MAX_PENDING_FLOWS = 1000


@dataclass
class PendingAuthorization:
    user_id: str
    provider: Provider
    credentials: OAuthClientCredentials
    flow: Optional[Dict[str, Any]] = None  # MSAL device flow


@dataclass
class DeviceFlowStart:
    user_code: str
    verification_uri: str
    message: str
    expires_in: int
    interval: int
    poll_handle: str


@dataclass
class DeviceFlowPending:
    poll_handle: str


@dataclass
class DeviceFlowCompleted:
    account: EmailAccount


class AccountManager:
    """
    Onboards and removes EmailAccounts for users.

    Usage:
        manager = AccountManager(session_factory, vault, tokens, google, microsoft, adapters)
        url, state = manager.start_authorization("user-1")
    """

    def __init__(
        self,
        session_factory,
        vault,
        token_lifecycle,
        google,
        microsoft,
        adapters,
        flow_ttl_seconds: float = DEFAULT_FLOW_TTL_SECONDS,
        pending: Optional[TTLStore] = None,
    ):
        """
        Args:
            session_factory: From init_db()
            vault: CredentialVault used for stored tokens
            token_lifecycle: TokenLifecycle (OAuth credential resolution)
            google: GoogleOAuthClient
            microsoft: MicrosoftOAuthClient
            adapters: ProviderAdapters (profile lookup after sign-in)
            flow_ttl_seconds: Lifetime of an unfinished authorization
            pending: Store for pending authorizations (tests)
        """
        self.session_factory = session_factory
        self.vault = vault
        self.tokens = token_lifecycle
        self.google = google
        self.microsoft = microsoft
        self.adapters = adapters
        self.pending: TTLStore = pending or TTLStore(flow_ttl_seconds, max_size=MAX_PENDING_FLOWS)

    # ------------------------------------------------------------------
    # Gmail: authorization code
    # ------------------------------------------------------------------

    def start_authorization(self, user_id: str) -> Tuple[str, str]:
        """
        Begin a Gmail authorization.

        Returns:
            Tuple of (authorization URL, state)

        Raises:
            AuthConfigError: If no Google OAuth client is configured for the user
        """
        credentials = self.tokens.resolve_credentials(user_id, Provider.GMAIL.value)
        state = generate_secure_token()
        self.pending.put(state, PendingAuthorization(user_id=user_id, provider=Provider.GMAIL, credentials=credentials))
        logger.info(f"Started Gmail authorization for user {user_id} (credentials={credentials.source})")
        return self.google.authorization_url(credentials, state), state

    async def complete_authorization(self, state: str, code: str) -> EmailAccount:
        """
        Finish a Gmail authorization from the OAuth redirect.

        Raises:
            TokenExpiredError: Unknown or expired state
            AuthConfigError: Google rejected the code
        """
        pending = self.pending.pop(state)
        if pending is None or pending.provider != Provider.GMAIL:
            raise TokenExpiredError(
                "Unknown or expired OAuth state",
                user_message="The sign-in link expired. Please connect the account again.",
            )

        grant = await self.google.exchange_code(pending.credentials, code)
        return await self._save_account(pending.user_id, Provider.GMAIL, grant)

    # ------------------------------------------------------------------
    # Outlook: device code
    # ------------------------------------------------------------------

    async def start_device_flow(self, user_id: str) -> DeviceFlowStart:
        """
        Begin an Outlook device-code sign-in.

        Raises:
            AuthConfigError: If no Microsoft client is configured or the flow is refused
        """
        credentials = self.tokens.resolve_credentials(user_id, Provider.OUTLOOK.value)
        flow = await self.microsoft.initiate_device_flow(credentials)

        handle = generate_secure_token()
        expires_in = int(flow.get("expires_in", DEFAULT_FLOW_TTL_SECONDS))
        self.pending.put(
            handle,
            PendingAuthorization(user_id=user_id, provider=Provider.OUTLOOK, credentials=credentials, flow=flow),
            ttl_seconds=expires_in,
        )
        logger.info(f"Started Outlook device flow for user {user_id}")

        return DeviceFlowStart(
            user_code=flow["user_code"],
            verification_uri=flow.get("verification_uri", ""),
            message=flow.get("message", ""),
            expires_in=expires_in,
            interval=int(flow.get("interval", 5)),
            poll_handle=handle,
        )

    async def poll_device_flow(self, poll_handle: str) -> Union[DeviceFlowPending, DeviceFlowCompleted]:
        """
        Poll once for device-code completion.

        Raises:
            TokenExpiredError: Unknown/expired handle, or the code expired or was declined
        """
        pending = self.pending.get(poll_handle)
        if pending is None or pending.provider != Provider.OUTLOOK:
            raise TokenExpiredError(
                "Unknown or expired device flow",
                user_message="The sign-in code expired. Please start again.",
            )

        try:
            grant = await self.microsoft.poll_device_flow(pending.credentials, pending.flow)
        except TokenExpiredError:
            self.pending.pop(poll_handle)
            raise

        if grant is None:
            return DeviceFlowPending(poll_handle=poll_handle)

        self.pending.pop(poll_handle)
        account = await self._save_account(pending.user_id, Provider.OUTLOOK, grant)
        return DeviceFlowCompleted(account=account)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def _save_account(self, user_id: str, provider: Provider, grant: TokenGrant) -> EmailAccount:
        profile = await self.adapters.for_provider(provider).fetch_profile(grant.access_token)
        if not profile.address:
            raise ProviderFetchError(f"{provider.value} profile has no email address")

        with session_scope(self.session_factory) as db:
            account = AccountRepository(db).upsert_account(
                user_id=user_id,
                provider=provider.value,
                email_address=profile.address,
                access_token=self.vault.encrypt(grant.access_token),
                refresh_token=self.vault.encrypt(grant.refresh_token) if grant.refresh_token else None,
                token_expires_at=grant.expires_at(),
                scopes=grant.scope,
            )
        return account

    def disconnect_account(self, user_id: str, account_id) -> bool:
        """Delete the account with its emails and logs. Returns False when not found."""
        with session_scope(self.session_factory) as db:
            return AccountRepository(db).delete_account(user_id, account_id)
