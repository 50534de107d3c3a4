"""
Gmail provider adapter.

Talks to the Gmail REST API through googleapiclient. The client library is
synchronous, so every call runs in a worker thread with its own service object
(googleapiclient's httplib2 transport is not thread-safe).

Listing collects every matching id first, then resolves timestamps for the
oldest ones with batched `format=minimal` requests, the cheapest call shape
that carries internalDate.
"""
import asyncio
import base64
import binascii
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from backend.core.errors import ProviderFetchError, TokenExpiredError
from .base import (
    Candidate, CandidateListing, DraftAttachment, FetchOptions, MessageOperation, Profile, Provider,
    ProviderAdapter, ProviderMessage, parse_date_header,
)

logger = logging.getLogger(__name__)

# Gmail caps a batch request at 100 sub-requests
MAX_PAGE_SIZE = 100

# messages.list maxResults ceiling; listing carries ids only
LIST_PAGE_SIZE = 500

# Headers kept on ProviderMessage.headers (classification metadata signals)
METADATA_HEADERS = ['Importance', 'X-Priority', 'List-Unsubscribe', 'Auto-Submitted', 'X-Mailer']

LABEL_CHANGES = {
    MessageOperation.ARCHIVE: {'removeLabelIds': ['INBOX']},
    MessageOperation.MARK_READ: {'removeLabelIds': ['UNREAD']},
    MessageOperation.STAR: {'addLabelIds': ['STARRED']},
    MessageOperation.FLAG: {'addLabelIds': ['IMPORTANT']},
}


def build_gmail_service(access_token: str):
    """Gmail v1 service authorized with a bare access token."""
    return build('gmail', 'v1', credentials=Credentials(token=access_token), cache_discovery=False)


def decode_base64url(data: Optional[str]) -> str:
    """Decode Gmail's unpadded base64url body data to text."""
    if not data:
        return ''
    try:
        padded = data + '=' * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode('utf-8', errors='replace')
    except (binascii.Error, ValueError):
        return ''


def get_header(headers: List[Dict[str, str]], name: str) -> str:
    """Case-insensitive header lookup on a Gmail payload header list."""
    name = name.lower()
    for header in headers or []:
        if header.get('name', '').lower() == name:
            return header.get('value', '')
    return ''


def extract_body(payload: Dict[str, Any]) -> str:
    """
    Extract the message body from a Gmail payload.

    Prefers text/plain over text/html, searching nested multiparts.
    """
    if not payload:
        return ''

    parts = payload.get('parts')
    if not parts:
        return decode_base64url(payload.get('body', {}).get('data'))

    plain = _find_part(parts, 'text/plain')
    if plain is not None:
        return plain
    html = _find_part(parts, 'text/html')
    if html is not None:
        return html
    return decode_base64url(parts[0].get('body', {}).get('data'))


def _find_part(parts: List[Dict[str, Any]], mime_type: str) -> Optional[str]:
    for part in parts:
        if part.get('mimeType') == mime_type and part.get('body', {}).get('data'):
            return decode_base64url(part['body']['data'])
        if part.get('parts'):
            found = _find_part(part['parts'], mime_type)
            if found is not None:
                return found
    return None


def internal_date_to_datetime(value) -> datetime:
    """Gmail internalDate (epoch milliseconds, as a string) to naive UTC."""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


def encode_raw_message(message: EmailMessage) -> str:
    """base64url without padding, the encoding drafts.create expects for `raw`."""
    return base64.urlsafe_b64encode(message.as_bytes()).decode('ascii').rstrip('=')


def build_reply_message(
    to_address: str,
    subject: str,
    body: str,
    original_message_id: Optional[str] = None,
    attachments: Optional[List[DraftAttachment]] = None,
) -> EmailMessage:
    """
    Build the MIME reply.

    In-Reply-To/References point at the original Message-ID so the draft stays
    in the conversation; attachments turn it into multipart/mixed.
    """
    message = EmailMessage()
    message['To'] = to_address
    message['Subject'] = subject if subject.lower().startswith('re:') else f"Re: {subject}"
    if original_message_id:
        message['In-Reply-To'] = original_message_id
        message['References'] = original_message_id
    message.set_content(body)

    for attachment in attachments or []:
        maintype, _, subtype = (attachment.content_type or 'application/octet-stream').partition('/')
        message.add_attachment(
            attachment.data,
            maintype=maintype,
            subtype=subtype or 'octet-stream',
            filename=attachment.filename,
        )
    return message


class GmailAdapter(ProviderAdapter):
    """ProviderAdapter over the Gmail API."""

    provider = Provider.GMAIL

    def __init__(
        self,
        vault,
        service_factory: Callable[[str], Any] = build_gmail_service,
        page_size: int = 20,
        default_query: str = 'in:inbox',
        hydration_concurrency: int = 5,
    ):
        """
        Args:
            vault: CredentialVault used to read stored access tokens
            service_factory: Builds a Gmail service from an access token
            page_size: ids per format=minimal batch (max 100)
            default_query: Gmail search query used when FetchOptions has none
        """
        super().__init__(vault, hydration_concurrency)
        self.service_factory = service_factory
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.default_query = default_query

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _build_query(self, options: FetchOptions) -> str:
        query = options.query if options.query is not None else self.default_query
        if options.since is not None:
            # after: is second-granular; the base class applies the exact bound
            epoch = int(options.since.replace(tzinfo=timezone.utc).timestamp())
            query = f"{query} after:{epoch}".strip()
        return query

    async def _list_candidates(self, account, token: str, options: FetchOptions) -> CandidateListing:
        return await asyncio.to_thread(self._list_candidates_sync, token, self._build_query(options), options.max_candidates)

    def _list_candidates_sync(self, token: str, query: str, max_candidates: int) -> CandidateListing:
        """
        Page through every matching id, then resolve timestamps for the oldest
        max_candidates only. messages.list has no ascending order, so stopping
        early would keep the newest matches instead.
        """
        service = self.service_factory(token)
        ids: List[str] = []
        page_token = None

        try:
            while True:
                response = service.users().messages().list(
                    userId='me',
                    q=query,
                    maxResults=LIST_PAGE_SIZE,
                    pageToken=page_token,
                ).execute()

                ids.extend(m['id'] for m in response.get('messages', []) if m.get('id'))

                page_token = response.get('nextPageToken')
                if not page_token:
                    break

            # Listed newest first; the tail holds the oldest matches
            oldest = ids[-max_candidates:] if max_candidates > 0 else []
            candidates: List[Candidate] = []
            unresolved: List[str] = []
            for start in range(0, len(oldest), self.page_size):
                resolved, failed = self._resolve_timestamps(service, oldest[start:start + self.page_size])
                candidates.extend(resolved)
                unresolved.extend(failed)
        except HttpError as e:
            raise self._translate(e, "list messages")

        logger.debug(
            f"Gmail listing for '{query}': {len(ids)} ids, {len(candidates)} candidates, "
            f"{len(unresolved)} unresolved"
        )
        return CandidateListing(
            candidates=candidates,
            truncated=len(ids) > len(oldest),
            unresolved=unresolved,
        )

    def _resolve_timestamps(self, service, ids: List[str]):
        """
        Batch format=minimal gets for one chunk of ids.

        Entries the batch could not resolve are retried one at a time.

        Returns:
            (resolved candidates, ids still without a timestamp)
        """
        resolved: Dict[str, Candidate] = {}

        def on_response(request_id, response, exception):
            if exception is not None:
                logger.warning(f"Failed to resolve timestamp for message {request_id}: {exception}")
                return
            candidate = self._minimal_to_candidate(request_id, response)
            if candidate is not None:
                resolved[request_id] = candidate

        batch = service.new_batch_http_request(callback=on_response)
        for message_id in ids:
            batch.add(
                service.users().messages().get(userId='me', id=message_id, format='minimal'),
                request_id=message_id,
            )
        batch.execute()

        failed: List[str] = []
        for message_id in ids:
            if message_id in resolved:
                continue
            try:
                response = service.users().messages().get(userId='me', id=message_id, format='minimal').execute()
            except HttpError as e:
                if getattr(e.resp, 'status', None) == 401:
                    raise
                logger.warning(f"Retry failed to resolve timestamp for message {message_id}: {e}")
                failed.append(message_id)
                continue
            candidate = self._minimal_to_candidate(message_id, response)
            if candidate is None:
                failed.append(message_id)
            else:
                resolved[message_id] = candidate

        return [resolved[i] for i in ids if i in resolved], failed

    @staticmethod
    def _minimal_to_candidate(message_id: str, response) -> Optional[Candidate]:
        try:
            return Candidate(
                message_id=message_id,
                timestamp=internal_date_to_datetime(response['internalDate']),
                extra={'thread_id': response.get('threadId')},
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Message {message_id} has no usable internalDate: {e}")
            return None

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------

    async def _hydrate(self, account, token: str, candidate: Candidate) -> ProviderMessage:
        return await asyncio.to_thread(self._hydrate_sync, token, candidate)

    def _hydrate_sync(self, token: str, candidate: Candidate) -> ProviderMessage:
        service = self.service_factory(token)
        try:
            message = service.users().messages().get(userId='me', id=candidate.message_id, format='full').execute()
        except HttpError as e:
            raise self._translate(e, f"get message {candidate.message_id}")
        return self.parse_message(message, candidate.timestamp)

    @staticmethod
    def parse_message(message: Dict[str, Any], timestamp: Optional[datetime] = None) -> ProviderMessage:
        """Normalize a format=full Gmail message resource."""
        payload = message.get('payload', {})
        headers = payload.get('headers', [])

        if timestamp is None and message.get('internalDate'):
            timestamp = internal_date_to_datetime(message['internalDate'])

        date = parse_date_header(get_header(headers, 'Date'))
        return ProviderMessage(
            id=message['id'],
            timestamp=timestamp or date,
            thread_id=message.get('threadId'),
            subject=get_header(headers, 'Subject') or 'No Subject',
            sender=get_header(headers, 'From'),
            recipient=get_header(headers, 'To'),
            date=date,
            body=extract_body(payload),
            snippet=message.get('snippet', ''),
            headers={name: get_header(headers, name) for name in METADATA_HEADERS if get_header(headers, name)},
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _apply_operation(self, token: str, message_id: str, operation: MessageOperation, labels: List[str]) -> None:
        await asyncio.to_thread(self._apply_operation_sync, token, message_id, operation, labels)

    def _apply_operation_sync(self, token: str, message_id: str, operation: MessageOperation, labels: List[str]) -> None:
        messages = self.service_factory(token).users().messages()

        if operation == MessageOperation.TRASH:
            messages.trash(userId='me', id=message_id).execute()
            return

        if operation == MessageOperation.ADD_LABEL:
            body = {'addLabelIds': list(labels)}
        elif operation == MessageOperation.REMOVE_LABEL:
            body = {'removeLabelIds': list(labels)}
        else:
            body = LABEL_CHANGES[operation]

        messages.modify(userId='me', id=message_id, body=body).execute()

    async def _create_reply_draft(self, token: str, original_message_id: str, body: str, attachments: List[DraftAttachment]) -> str:
        return await asyncio.to_thread(self._create_reply_draft_sync, token, original_message_id, body, attachments)

    def _create_reply_draft_sync(self, token: str, original_message_id: str, body: str, attachments: List[DraftAttachment]) -> str:
        service = self.service_factory(token)

        original = service.users().messages().get(
            userId='me',
            id=original_message_id,
            format='metadata',
            metadataHeaders=['From', 'Reply-To', 'Subject', 'Message-ID'],
        ).execute()
        headers = original.get('payload', {}).get('headers', [])

        reply = build_reply_message(
            to_address=get_header(headers, 'Reply-To') or get_header(headers, 'From'),
            subject=get_header(headers, 'Subject'),
            body=body,
            original_message_id=get_header(headers, 'Message-ID') or None,
            attachments=attachments,
        )

        draft = service.users().drafts().create(
            userId='me',
            body={'message': {'raw': encode_raw_message(reply), 'threadId': original.get('threadId')}},
        ).execute()
        return draft['id']

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def fetch_profile(self, access_token: str) -> Profile:
        def get_profile():
            try:
                return self.service_factory(access_token).users().getProfile(userId='me').execute()
            except HttpError as e:
                raise self._translate(e, "get profile")

        profile = await asyncio.to_thread(get_profile)
        return Profile(address=profile.get('emailAddress', ''))

    @staticmethod
    def _translate(error: HttpError, what: str):
        status = getattr(error.resp, 'status', None)
        if status == 401:
            return TokenExpiredError(f"Gmail rejected the access token ({what})")
        return ProviderFetchError(f"Gmail failed to {what}: HTTP {status}")
