"""
Unit tests for the Gmail adapter.

The Gmail service is a MagicMock standing in for a googleapiclient resource;
batch requests are replayed by FakeBatch.
"""
import base64
import email
from datetime import datetime, timedelta
from email import policy
from unittest.mock import MagicMock, Mock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from backend.core.email.providers.base import DraftAttachment, FetchOptions, MessageOperation
from backend.core.email.providers.gmail import (
    GmailAdapter, build_reply_message, decode_base64url, encode_raw_message, extract_body, internal_date_to_datetime,
)
from backend.core.errors import ActionExecutionError, ProviderFetchError, TokenExpiredError
from backend.tests.fakes import T0


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip('=')


def epoch_ms(value) -> str:
    return str(int((value - datetime(1970, 1, 1)).total_seconds() * 1000))


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({'status': str(status)}), b'{}')


class FakeBatch:
    """Replays added requests on execute(), calling back like BatchHttpRequest."""

    def __init__(self, callback):
        self.callback = callback
        self.requests = []

    def add(self, request, request_id=None):
        self.requests.append((request_id, request))

    def execute(self):
        for request_id, request in self.requests:
            try:
                self.callback(request_id, request.execute(), None)
            except HttpError as e:
                self.callback(request_id, None, e)


def full_message(message_id: str, received, body_text: str = "Plain body", html: str = "<p>HTML body</p>"):
    return {
        'id': message_id,
        'threadId': f"t-{message_id}",
        'internalDate': epoch_ms(received),
        'snippet': f"snippet {message_id}",
        'payload': {
            'mimeType': 'multipart/alternative',
            'headers': [
                {'name': 'Subject', 'value': f"Subject {message_id}"},
                {'name': 'From', 'value': 'Bob <bob@example.com>'},
                {'name': 'To', 'value': 'me@example.com'},
                {'name': 'Date', 'value': 'Fri, 01 Mar 2024 12:00:00 +0000'},
                {'name': 'List-Unsubscribe', 'value': '<mailto:unsub@example.com>'},
            ],
            'parts': [
                {'mimeType': 'text/html', 'body': {'data': b64(html)}},
                {'mimeType': 'text/plain', 'body': {'data': b64(body_text)}},
            ],
        },
    }


class FakeMailbox:
    """Builds a MagicMock service serving `received` = {id: datetime} newest first, in pages."""

    def __init__(self, received, page_size=2):
        self.received = received
        self.page_size = page_size
        self.service = MagicMock()
        self.failing_ids = set()
        self.flaky_ids = set()  # Fail their first minimal get only
        self.minimal_gets = []
        self.messages = self.service.users.return_value.messages.return_value
        self.messages.list.side_effect = self._list
        self.messages.get.side_effect = self._get
        self.service.new_batch_http_request.side_effect = lambda callback: FakeBatch(callback)

    def _list(self, userId, q, maxResults, pageToken=None):
        ids = sorted(self.received, key=lambda i: self.received[i], reverse=True)
        start = int(pageToken or 0)
        page = ids[start:start + min(maxResults, self.page_size)]
        response = {'messages': [{'id': i, 'threadId': f"t-{i}"} for i in page]}
        if start + len(page) < len(ids):
            response['nextPageToken'] = str(start + len(page))
        return Mock(execute=Mock(return_value=response))

    def _get(self, userId, id, format, **kwargs):
        if id in self.failing_ids:
            return Mock(execute=Mock(side_effect=http_error(500)))
        if format == 'minimal':
            self.minimal_gets.append(id)
            if id in self.flaky_ids:
                self.flaky_ids.discard(id)
                return Mock(execute=Mock(side_effect=http_error(500)))
            return Mock(execute=Mock(return_value={'id': id, 'threadId': f"t-{id}", 'internalDate': epoch_ms(self.received[id])}))
        return Mock(execute=Mock(return_value=full_message(id, self.received[id])))


@pytest.fixture
def mailbox():
    return FakeMailbox({
        'new': T0 + timedelta(minutes=3),
        'mid': T0 + timedelta(minutes=2),
        'old': T0 + timedelta(minutes=1),
    })


@pytest.fixture
def adapter(vault, mailbox):
    return GmailAdapter(vault, service_factory=lambda token: mailbox.service, page_size=2)


class TestGmailFetch:
    """Listing, timestamp batches and hydration"""

    @pytest.mark.asyncio
    async def test_fetch_oldest_first_across_pages(self, adapter, mailbox, make_account):
        result = await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=2))

        assert [m.id for m in result.messages] == ['old', 'mid']
        assert result.has_more is True
        assert result.messages[0].timestamp == T0 + timedelta(minutes=1)
        assert mailbox.messages.list.call_count == 2

    @pytest.mark.asyncio
    async def test_full_fetch_only_for_selected(self, adapter, mailbox, make_account):
        await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=1))

        full_gets = [c for c in mailbox.messages.get.call_args_list if c.kwargs['format'] == 'full']
        assert [c.kwargs['id'] for c in full_gets] == ['old']

    @pytest.mark.asyncio
    async def test_query_includes_after_bound(self, adapter, mailbox, make_account):
        since = T0 + timedelta(minutes=1)
        result = await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5, since=since))

        query = mailbox.messages.list.call_args_list[0].kwargs['q']
        assert query.startswith('in:inbox after:')
        assert [m.id for m in result.messages] == ['mid', 'new']

    @pytest.mark.asyncio
    async def test_capped_listing_resolves_only_oldest(self, vault, make_account):
        mailbox = FakeMailbox({f"m{n}": T0 + timedelta(minutes=n + 1) for n in range(4)})
        adapter = GmailAdapter(vault, service_factory=lambda token: mailbox.service, page_size=2)

        result = await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=1, max_candidates=2))

        assert [m.id for m in result.messages] == ['m0']
        assert result.has_more is True
        assert sorted(mailbox.minimal_gets) == ['m0', 'm1']

    @pytest.mark.asyncio
    async def test_unresolvable_ids_are_reported(self, adapter, mailbox, make_account):
        mailbox.failing_ids.add('mid')
        result = await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5))

        assert [m.id for m in result.messages] == ['old', 'new']
        assert result.unresolved == ['mid']

    @pytest.mark.asyncio
    async def test_failed_batch_entry_is_retried(self, adapter, mailbox, make_account):
        mailbox.flaky_ids.add('old')
        result = await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5))

        assert [m.id for m in result.messages] == ['old', 'mid', 'new']
        assert result.unresolved == []
        assert mailbox.minimal_gets.count('old') == 2

    @pytest.mark.asyncio
    async def test_retry_401_is_token_expired(self, adapter, mailbox, make_account):
        original = mailbox.messages.get.side_effect

        def get(userId, id, format, **kwargs):
            if id == 'old' and format == 'minimal':
                return Mock(execute=Mock(side_effect=http_error(401)))
            return original(userId=userId, id=id, format=format, **kwargs)

        mailbox.messages.get.side_effect = get
        with pytest.raises(TokenExpiredError):
            await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5))

    @pytest.mark.asyncio
    async def test_list_401_is_token_expired(self, adapter, mailbox, make_account):
        mailbox.messages.list.side_effect = lambda **kw: Mock(execute=Mock(side_effect=http_error(401)))
        with pytest.raises(TokenExpiredError):
            await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5))

    @pytest.mark.asyncio
    async def test_list_500_is_provider_error(self, adapter, mailbox, make_account):
        mailbox.messages.list.side_effect = lambda **kw: Mock(execute=Mock(side_effect=http_error(503)))
        with pytest.raises(ProviderFetchError):
            await adapter.fetch_oldest_first(make_account(), FetchOptions(limit=5))

    def test_parse_message_prefers_plain_text(self):
        message = GmailAdapter.parse_message(full_message('x', T0))

        assert message.body == 'Plain body'
        assert message.subject == 'Subject x'
        assert message.sender == 'Bob <bob@example.com>'
        assert message.thread_id == 't-x'
        assert message.timestamp == T0
        assert message.date == T0
        assert message.headers == {'List-Unsubscribe': '<mailto:unsub@example.com>'}


class TestGmailMutations:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation, body", [
        (MessageOperation.ARCHIVE, {'removeLabelIds': ['INBOX']}),
        (MessageOperation.MARK_READ, {'removeLabelIds': ['UNREAD']}),
        (MessageOperation.STAR, {'addLabelIds': ['STARRED']}),
        (MessageOperation.FLAG, {'addLabelIds': ['IMPORTANT']}),
    ])
    async def test_label_changes(self, adapter, mailbox, make_account, operation, body):
        await adapter.mutate(make_account(), 'm1', operation)
        mailbox.messages.modify.assert_called_once_with(userId='me', id='m1', body=body)

    @pytest.mark.asyncio
    async def test_custom_labels(self, adapter, mailbox, make_account):
        await adapter.mutate(make_account(), 'm1', MessageOperation.REMOVE_LABEL, labels=['Label_7'])
        mailbox.messages.modify.assert_called_once_with(userId='me', id='m1', body={'removeLabelIds': ['Label_7']})

    @pytest.mark.asyncio
    async def test_trash(self, adapter, mailbox, make_account):
        await adapter.mutate(make_account(), 'm1', MessageOperation.TRASH)
        mailbox.messages.trash.assert_called_once_with(userId='me', id='m1')

    @pytest.mark.asyncio
    async def test_rejected_modify(self, adapter, mailbox, make_account):
        mailbox.messages.modify.return_value.execute.side_effect = http_error(404)
        with pytest.raises(ActionExecutionError):
            await adapter.mutate(make_account(), 'm1', MessageOperation.ARCHIVE)


class TestGmailDrafts:

    @pytest.mark.asyncio
    async def test_reply_draft_threads_and_encodes(self, adapter, mailbox, make_account):
        mailbox.messages.get.side_effect = None
        mailbox.messages.get.return_value.execute.return_value = {
            'id': 'm1',
            'threadId': 'thread-1',
            'payload': {'headers': [
                {'name': 'From', 'value': 'Bob <bob@example.com>'},
                {'name': 'Subject', 'value': 'Pricing'},
                {'name': 'Message-ID', 'value': '<abc@mail.example.com>'},
            ]},
        }
        drafts = mailbox.service.users.return_value.drafts.return_value
        drafts.create.return_value.execute.return_value = {'id': 'draft-9'}

        attachment = DraftAttachment('prices.pdf', 'application/pdf', b'%PDF')
        draft_id = await adapter.create_reply_draft(make_account(), 'm1', 'See attached.', [attachment])

        assert draft_id == 'draft-9'
        body = drafts.create.call_args.kwargs['body']
        assert body['message']['threadId'] == 'thread-1'
        raw = body['message']['raw']
        assert '=' not in raw

        parsed = email.message_from_bytes(base64.urlsafe_b64decode(raw + '=' * (-len(raw) % 4)), policy=policy.default)
        assert parsed['To'] == 'Bob <bob@example.com>'
        assert parsed['Subject'] == 'Re: Pricing'
        assert parsed['In-Reply-To'] == '<abc@mail.example.com>'
        assert [p.get_filename() for p in parsed.iter_attachments()] == ['prices.pdf']

    @pytest.mark.asyncio
    async def test_profile(self, adapter, mailbox):
        mailbox.service.users.return_value.getProfile.return_value.execute.return_value = {'emailAddress': 'me@gmail.com'}
        profile = await adapter.fetch_profile('token')
        assert profile.address == 'me@gmail.com'


class TestGmailHelpers:

    def test_decode_base64url_handles_missing_padding(self):
        assert decode_base64url(b64('hi!')) == 'hi!'
        assert decode_base64url(None) == ''

    def test_extract_body_single_part(self):
        assert extract_body({'body': {'data': b64('only part')}}) == 'only part'

    def test_extract_body_nested_html_only(self):
        payload = {'parts': [{'mimeType': 'multipart/related', 'parts': [
            {'mimeType': 'text/html', 'body': {'data': b64('<b>hi</b>')}},
        ]}]}
        assert extract_body(payload) == '<b>hi</b>'

    def test_internal_date(self):
        assert internal_date_to_datetime('1709294400000') == T0

    def test_reply_subject_not_doubled(self):
        message = build_reply_message('a@example.com', 'RE: Hello', 'body')
        assert message['Subject'] == 'RE: Hello'

    def test_encode_raw_message_has_no_padding(self):
        assert not encode_raw_message(build_reply_message('a@example.com', 'x', 'y')).endswith('=')
