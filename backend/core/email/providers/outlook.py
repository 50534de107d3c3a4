"""
Outlook provider adapter (Microsoft Graph v1.0).

Listing pages through /me/mailFolders/inbox/messages selecting only id and
receivedDateTime; hydration downloads the raw MIME ($value) and parses it with
the standard library email package.
"""
import base64
import email
import logging
from datetime import datetime
from email import policy
from typing import Any, Dict, List, Optional

import httpx

from backend.core.errors import ProviderFetchError, TokenExpiredError
from .base import (
    Candidate, CandidateListing, DraftAttachment, FetchOptions, MessageOperation, Profile, Provider,
    ProviderAdapter, ProviderMessage, parse_date_header, to_naive_utc,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

METADATA_HEADERS = ['Importance', 'X-Priority', 'List-Unsubscribe', 'Auto-Submitted', 'X-Mailer']

# Well-known folder names accepted by the /move endpoint
MOVE_DESTINATIONS = {
    MessageOperation.TRASH: 'deleteditems',
    MessageOperation.ARCHIVE: 'archive',
}


def parse_graph_datetime(value: str) -> datetime:
    """Graph timestamps ('2024-01-05T10:00:00Z') to naive UTC."""
    return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


def format_graph_datetime(value: datetime) -> str:
    return to_naive_utc(value).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_mime(raw: bytes) -> Dict[str, Any]:
    """
    Parse raw MIME into subject/from/to/date/body/headers.

    The body prefers text/plain and falls back to text/html.
    """
    message = email.message_from_bytes(raw, policy=policy.default)

    body = ''
    part = message.get_body(preferencelist=('plain', 'html'))
    if part is not None:
        try:
            body = part.get_content()
        except (LookupError, UnicodeDecodeError) as e:
            logger.debug(f"Could not decode MIME body part: {e}")
            payload = part.get_payload(decode=True) or b''
            body = payload.decode('utf-8', errors='replace')

    return {
        'subject': str(message.get('Subject', '') or ''),
        'sender': str(message.get('From', '') or ''),
        'recipient': str(message.get('To', '') or ''),
        'date': parse_date_header(message.get('Date')),
        'body': body,
        'headers': {name: str(message[name]) for name in METADATA_HEADERS if message.get(name)},
    }


class OutlookAdapter(ProviderAdapter):
    """ProviderAdapter over Microsoft Graph."""

    provider = Provider.OUTLOOK

    def __init__(
        self,
        vault,
        http_client: Optional[httpx.AsyncClient] = None,
        page_size: int = 20,
        folder: str = 'inbox',
        timeout: float = 30.0,
        hydration_concurrency: int = 5,
    ):
        """
        Args:
            vault: CredentialVault used to read stored access tokens
            http_client: Shared AsyncClient (one is created when omitted)
            page_size: $top for list requests
            folder: Mail folder listed for candidates
        """
        super().__init__(vault, hydration_concurrency)
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.page_size = max(1, page_size)
        self.folder = folder

    async def aclose(self):
        await self.http.aclose()

    async def _request(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        if not url.startswith('http'):
            url = f"{GRAPH_BASE_URL}{url}"
        headers = {'Authorization': f"Bearer {token}"}
        headers.update(kwargs.pop('headers', {}))

        response = await self.http.request(method, url, headers=headers, **kwargs)
        if response.status_code == 401:
            raise TokenExpiredError("Outlook session expired. Please reconnect your account in Settings.")
        response.raise_for_status()
        return response

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _list_candidates(self, account, token: str, options: FetchOptions) -> CandidateListing:
        filters = []
        if options.query:
            filters.append(options.query)
        if options.since is not None:
            filters.append(f"receivedDateTime gt {format_graph_datetime(options.since)}")

        params = {
            '$top': str(min(self.page_size, options.max_candidates)),
            '$select': 'id,conversationId,receivedDateTime',
            # Oldest first, so stopping at max_candidates keeps the oldest matches
            '$orderby': 'receivedDateTime asc',
        }
        if filters:
            params['$filter'] = ' and '.join(filters)

        candidates: List[Candidate] = []
        url: Optional[str] = f"/me/mailFolders/{self.folder}/messages"

        try:
            while url:
                if len(candidates) >= options.max_candidates:
                    break
                response = await self._request('GET', url, token, params=params)
                data = response.json()

                for item in data.get('value', []):
                    if not item.get('id') or not item.get('receivedDateTime'):
                        continue
                    candidates.append(Candidate(
                        message_id=item['id'],
                        timestamp=parse_graph_datetime(item['receivedDateTime']),
                        extra={'thread_id': item.get('conversationId')},
                    ))

                # nextLink already carries the query string
                url = data.get('@odata.nextLink')
                params = None
        except httpx.HTTPError as e:
            raise ProviderFetchError(f"Failed to fetch messages from Outlook: {e}") from e

        return CandidateListing(
            candidates=candidates[:options.max_candidates],
            truncated=len(candidates) > options.max_candidates or url is not None,
        )

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------

    async def _hydrate(self, account, token: str, candidate: Candidate) -> ProviderMessage:
        response = await self._request('GET', f"/me/messages/{candidate.message_id}/$value", token)
        parsed = parse_mime(response.content)

        return ProviderMessage(
            id=candidate.message_id,
            timestamp=candidate.timestamp,
            thread_id=candidate.extra.get('thread_id'),
            subject=parsed['subject'] or 'No Subject',
            sender=parsed['sender'],
            recipient=parsed['recipient'],
            date=parsed['date'],
            body=parsed['body'],
            snippet=parsed['body'][:200],
            headers=parsed['headers'],
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _apply_operation(self, token: str, message_id: str, operation: MessageOperation, labels: List[str]) -> None:
        path = f"/me/messages/{message_id}"

        if operation in MOVE_DESTINATIONS:
            await self._request('POST', f"{path}/move", token, json={'destinationId': MOVE_DESTINATIONS[operation]})
        elif operation == MessageOperation.MARK_READ:
            await self._request('PATCH', path, token, json={'isRead': True})
        elif operation in (MessageOperation.STAR, MessageOperation.FLAG):
            await self._request('PATCH', path, token, json={'flag': {'flagStatus': 'flagged'}})
        else:
            # Outlook has no labels; categories are the closest equivalent
            response = await self._request('GET', path, token, params={'$select': 'categories'})
            categories = list(response.json().get('categories', []))
            if operation == MessageOperation.ADD_LABEL:
                categories.extend(label for label in labels if label not in categories)
            else:
                categories = [c for c in categories if c not in labels]
            await self._request('PATCH', path, token, json={'categories': categories})

    async def _create_reply_draft(self, token: str, original_message_id: str, body: str, attachments: List[DraftAttachment]) -> str:
        response = await self._request('POST', f"/me/messages/{original_message_id}/createReply", token, json={})
        draft_id = response.json()['id']

        await self._request('PATCH', f"/me/messages/{draft_id}", token, json={
            'body': {'contentType': 'Text', 'content': body},
        })

        for attachment in attachments:
            await self._request('POST', f"/me/messages/{draft_id}/attachments", token, json={
                '@odata.type': '#microsoft.graph.fileAttachment',
                'name': attachment.filename,
                'contentType': attachment.content_type,
                'contentBytes': base64.b64encode(attachment.data).decode('ascii'),
            })

        return draft_id

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def fetch_profile(self, access_token: str) -> Profile:
        response = await self._request('GET', '/me', access_token)
        data = response.json()
        return Profile(
            address=data.get('mail') or data.get('userPrincipalName') or '',
            display_name=data.get('displayName') or '',
        )
