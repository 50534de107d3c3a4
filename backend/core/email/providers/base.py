"""
Abstract base class for mailbox providers.

Defines the capability set every provider variant implements (list/fetch,
mutate, reply drafts, profile) and the provider-independent oldest-first
fetch strategy built on top of it.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from backend.core.errors import (
    ActionExecutionError, AuthConfigError, MailSyncError, ProviderFetchError, TokenExpiredError,
)

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    """Supported mailbox providers."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class MessageOperation(str, Enum):
    """State changes a provider can apply to a single message."""
    TRASH = "trash"
    ARCHIVE = "archive"
    ADD_LABEL = "addLabel"
    REMOVE_LABEL = "removeLabel"
    MARK_READ = "markRead"
    STAR = "star"
    FLAG = "flag"


@dataclass
class Candidate:
    """Message id + provider-native timestamp, discovered before hydration."""
    message_id: str
    timestamp: datetime
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderMessage:
    """Hydrated message, normalized across providers."""
    id: str
    timestamp: datetime  # Provider-native receive instant (naive UTC); drives ordering and checkpoint
    thread_id: Optional[str] = None
    subject: str = "No Subject"
    sender: str = ""
    recipient: str = ""
    date: Optional[datetime] = None  # Date header, if parseable
    body: str = ""
    snippet: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CandidateListing:
    """One listing pass: the oldest matching candidates, up to max_candidates."""
    candidates: List[Candidate]
    truncated: bool = False  # More matches exist than were listed
    unresolved: List[str] = field(default_factory=list)  # Listed ids whose timestamp could not be read


@dataclass
class FetchOptions:
    limit: int
    query: Optional[str] = None
    max_candidates: int = 500
    since: Optional[datetime] = None  # Exclusive lower bound (checkpoint or sync start date)


@dataclass
class FetchResult:
    messages: List[ProviderMessage]
    has_more: bool
    candidate_count: int = 0
    skipped: List[Candidate] = field(default_factory=list)  # Selected but failed hydration
    unresolved: List[str] = field(default_factory=list)  # Matched, but could not be placed in time order


@dataclass
class DraftAttachment:
    filename: str
    content_type: str
    data: bytes


@dataclass
class Profile:
    address: str
    display_name: str = ""


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date_header(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 Date header to naive UTC; None when missing or malformed."""
    if not value:
        return None
    try:
        return to_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


class ProviderAdapter(ABC):
    """
    Uniform capability surface over one mailbox provider.

    Subclasses implement the provider calls (_list_candidates, _hydrate,
    _apply_operation, _create_reply_draft, fetch_profile); this class turns
    provider failures into the sync error taxonomy and implements
    fetch_oldest_first once for every provider.
    """

    provider: Provider

    def __init__(self, vault, hydration_concurrency: int = 5):
        """
        Args:
            vault: CredentialVault used to read stored access tokens
            hydration_concurrency: Max concurrent full-content fetches per run
        """
        self.vault = vault
        self.hydration_concurrency = max(1, hydration_concurrency)

    def access_token(self, account) -> str:
        token = self.vault.decrypt(account.access_token)
        if not token:
            raise TokenExpiredError(f"Account {account.id} has no access token")
        return token

    # ------------------------------------------------------------------
    # Oldest-first fetch
    # ------------------------------------------------------------------

    async def fetch_oldest_first(self, account, options: FetchOptions) -> FetchResult:
        """
        Fetch up to `options.limit` messages newer than `options.since`, oldest first.

        1. List the oldest max_candidates ids with minimal timestamps
        2. Sort ascending by timestamp
        3. Take the first `limit` (plus any candidates tied with the last one)
        4. Hydrate only those
        5. Re-sort hydrated messages ascending

        When the listing was cut at max_candidates, candidates sharing the
        newest listed timestamp are held back: unlisted mail may share it.

        Raises:
            ProviderFetchError: If listing fails
            TokenExpiredError: If the stored token is unusable
        """
        token = self.access_token(account)

        try:
            listing = await self._list_candidates(account, token, options)
        except MailSyncError:
            raise
        except Exception as e:
            logger.error(f"Listing messages failed for {self.provider.value} account {account.id}: {e}")
            raise ProviderFetchError(f"Failed to list {self.provider.value} messages: {e}") from e

        candidates = listing.candidates
        if options.since is not None:
            candidates = [c for c in candidates if c.timestamp > options.since]
        candidate_count = len(candidates)

        candidates.sort(key=lambda c: (c.timestamp, c.message_id))
        if listing.truncated:
            candidates = self._without_open_boundary(candidates)

        selected = self._select(candidates, options.limit)
        has_more = listing.truncated or len(candidates) > len(selected)

        if listing.unresolved:
            logger.warning(
                f"{self.provider.value} account {account.id}: {len(listing.unresolved)} "
                f"listed messages have no timestamp: {listing.unresolved}"
            )
        logger.debug(
            f"{self.provider.value} account {account.id}: {candidate_count} candidates, "
            f"hydrating {len(selected)} (has_more={has_more})"
        )

        messages, skipped = await self._hydrate_all(account, token, selected)
        messages.sort(key=lambda m: (m.timestamp, m.id))

        return FetchResult(
            messages=messages,
            has_more=has_more,
            candidate_count=candidate_count,
            skipped=skipped,
            unresolved=list(listing.unresolved),
        )

    @staticmethod
    def _without_open_boundary(candidates: List[Candidate]) -> List[Candidate]:
        """Drop candidates at the newest listed timestamp, unless that would drop all of them."""
        if not candidates:
            return candidates
        newest = candidates[-1].timestamp
        kept = [c for c in candidates if c.timestamp != newest]
        return kept or candidates

    @staticmethod
    def _select(candidates: Sequence[Candidate], limit: int) -> List[Candidate]:
        """
        First `limit` candidates of an ascending list.

        Candidates sharing the timestamp of the last selected one are included
        too: the next run only asks for strictly newer messages.
        """
        if limit <= 0:
            return []
        selected = list(candidates[:limit])
        if selected:
            boundary = selected[-1].timestamp
            for candidate in candidates[limit:]:
                if candidate.timestamp != boundary:
                    break
                selected.append(candidate)
        return selected

    async def _hydrate_all(self, account, token: str, selected: List[Candidate]):
        semaphore = asyncio.Semaphore(self.hydration_concurrency)

        async def hydrate_one(candidate: Candidate) -> ProviderMessage:
            async with semaphore:
                return await self._hydrate(account, token, candidate)

        results = await asyncio.gather(*(hydrate_one(c) for c in selected), return_exceptions=True)

        messages: List[ProviderMessage] = []
        skipped: List[Candidate] = []
        for candidate, result in zip(selected, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to fetch message details {candidate.message_id}: {result}")
                skipped.append(candidate)
            elif isinstance(result, BaseException):
                raise result
            else:
                messages.append(result)
        return messages, skipped

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mutate(self, account, message_id: str, operation: MessageOperation, labels: Optional[List[str]] = None) -> None:
        """
        Apply a state change to one message.

        Raises:
            ActionExecutionError: If the provider rejects the change
        """
        operation = MessageOperation(operation)
        if operation in (MessageOperation.ADD_LABEL, MessageOperation.REMOVE_LABEL) and not labels:
            raise ActionExecutionError(f"{operation.value} requires labels", action=operation.value, message_id=message_id)

        token = self.access_token(account)
        try:
            await self._apply_operation(token, message_id, operation, labels or [])
        except MailSyncError:
            raise
        except Exception as e:
            raise ActionExecutionError(
                f"{operation.value} failed for message {message_id}: {e}",
                action=operation.value,
                message_id=message_id,
            ) from e
        logger.debug(f"{self.provider.value} message {message_id}: {operation.value}")

    async def create_reply_draft(
        self,
        account,
        original_message_id: str,
        body: str,
        attachments: Optional[List[DraftAttachment]] = None,
    ) -> str:
        """
        Create a reply draft in the original message's thread.

        Returns:
            Provider draft id

        Raises:
            ActionExecutionError: If the draft cannot be created
        """
        token = self.access_token(account)
        try:
            draft_id = await self._create_reply_draft(token, original_message_id, body, attachments or [])
        except MailSyncError:
            raise
        except Exception as e:
            raise ActionExecutionError(
                f"Draft creation failed for message {original_message_id}: {e}",
                action="draft",
                message_id=original_message_id,
            ) from e
        logger.debug(f"{self.provider.value} draft created: {draft_id} (attachments={len(attachments or [])})")
        return draft_id

    async def get_profile(self, account) -> Profile:
        try:
            return await self.fetch_profile(self.access_token(account))
        except MailSyncError:
            raise
        except Exception as e:
            raise ProviderFetchError(f"Failed to get {self.provider.value} profile: {e}") from e

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    @abstractmethod
    async def _list_candidates(self, account, token: str, options: FetchOptions) -> CandidateListing:
        """
        List the oldest options.max_candidates messages matching the account's
        query, with timestamps. `truncated` must be set when more matched.
        """

    @abstractmethod
    async def _hydrate(self, account, token: str, candidate: Candidate) -> ProviderMessage:
        """Fetch full content for one candidate."""

    @abstractmethod
    async def _apply_operation(self, token: str, message_id: str, operation: MessageOperation, labels: List[str]) -> None:
        pass

    @abstractmethod
    async def _create_reply_draft(self, token: str, original_message_id: str, body: str, attachments: List[DraftAttachment]) -> str:
        pass

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> Profile:
        """Profile for a raw access token (also used during onboarding, before the account exists)."""


class ProviderAdapters:
    """Selects the adapter for an account's provider."""

    def __init__(self, gmail: ProviderAdapter, outlook: ProviderAdapter):
        self._adapters = {
            Provider.GMAIL: gmail,
            Provider.OUTLOOK: outlook,
        }

    def for_provider(self, provider) -> ProviderAdapter:
        try:
            return self._adapters[Provider(provider)]
        except ValueError:
            raise AuthConfigError(f"Unsupported provider: {provider}")

    def for_account(self, account) -> ProviderAdapter:
        return self.for_provider(account.provider)
