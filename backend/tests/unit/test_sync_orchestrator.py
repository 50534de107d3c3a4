"""
Unit tests for SyncOrchestrator.

Runs go through a real SQLite database and the in-memory FakeAdapter; the
classifier and token lifecycle are mocks.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from backend.core.ai.classifier import ClassificationResult
from backend.core.database import Email, ProcessingLog, session_scope
from backend.core.database.repository import AccountRepository, EmailRepository, ProcessingLogRepository
from backend.core.email.providers.base import DraftAttachment, MessageOperation, ProviderAdapters
from backend.core.email.rule_engine import RuleEngine
from backend.core.email.content_normalizer import ContentNormalizer
from backend.core.email.sync_orchestrator import SyncOrchestrator
from backend.core.errors import PersistenceError, TokenExpiredError
from backend.core.storage import AttachmentStore
from backend.tests.fakes import T0, make_message


def minutes(n):
    return T0 + timedelta(minutes=n)


@pytest.fixture
def classifier():
    classifier = Mock()
    classifier.classify = AsyncMock(return_value=None)
    classifier.generate_draft_reply = AsyncMock(return_value="Generated reply")
    return classifier


@pytest.fixture
def tokens():
    tokens = Mock()
    tokens.ensure_valid = AsyncMock(side_effect=lambda account: account)
    return tokens


@pytest.fixture
def orchestrator(session_factory, settings, fake_adapter, classifier, tokens):
    classifiers = Mock()
    classifiers.for_user.return_value = classifier
    return SyncOrchestrator(
        session_factory=session_factory,
        token_lifecycle=tokens,
        adapters=ProviderAdapters(gmail=fake_adapter, outlook=fake_adapter),
        normalizer=ContentNormalizer(),
        classifiers=classifiers,
        rule_engine=RuleEngine(clock=lambda: T0 + timedelta(days=1)),
        attachment_store=AttachmentStore(settings.attachments_dir),
        settings=settings,
    )


def load_account(session_factory, account_id):
    with session_scope(session_factory) as db:
        return AccountRepository(db).get_account(account_id)


def load_email(session_factory, account_id, external_id):
    with session_scope(session_factory) as db:
        return EmailRepository(db).get_by_external_id(account_id, external_id)


def load_runs(session_factory):
    with session_scope(session_factory) as db:
        return list(db.query(ProcessingLog).order_by(ProcessingLog.started_at))


class TestCheckpoint:
    """Oldest-first batches and checkpoint movement"""

    @pytest.mark.asyncio
    async def test_capped_runs_advance_oldest_first(self, orchestrator, fake_adapter, make_account, session_factory):
        for n in (1, 2, 5):
            fake_adapter.add(make_message(f"m{n}", minutes(n)))
        account = make_account(sync_max_emails_per_run=2)

        first = await orchestrator.sync_account(account.id)

        assert first.processed == 2
        assert first.has_more is True
        assert first.checkpoint == minutes(2)
        assert load_account(session_factory, account.id).last_sync_checkpoint == minutes(2)

        second = await orchestrator.sync_account(account.id)

        assert second.processed == 1
        assert second.has_more is False
        assert second.checkpoint == minutes(5)
        assert sorted(fake_adapter.hydrated) == ["m1", "m2", "m5"]

    @pytest.mark.asyncio
    async def test_empty_mailbox_keeps_checkpoint(self, orchestrator, make_account, session_factory):
        account = make_account(last_sync_checkpoint=minutes(3))

        result = await orchestrator.sync_account(account.id)

        assert result.ok
        assert result.processed == 0
        assert load_account(session_factory, account.id).last_sync_checkpoint == minutes(3)

    @pytest.mark.asyncio
    async def test_sync_start_date_bounds_first_run(self, orchestrator, fake_adapter, make_account):
        fake_adapter.add(make_message("before", minutes(1)))
        fake_adapter.add(make_message("after", minutes(10)))
        account = make_account(sync_start_date=minutes(5))

        result = await orchestrator.sync_account(account.id)

        assert result.processed == 1
        assert fake_adapter.hydrated == ["after"]

    @pytest.mark.asyncio
    async def test_hydration_failure_holds_checkpoint(self, orchestrator, fake_adapter, make_account, session_factory):
        for n in (1, 2, 3):
            fake_adapter.add(make_message(f"m{n}", minutes(n)))
        fake_adapter.broken.add("m2")
        account = make_account()

        first = await orchestrator.sync_account(account.id)

        assert first.ok
        assert first.processed == 2
        assert first.errors == 1
        assert first.checkpoint == minutes(1)

        fake_adapter.broken.clear()
        second = await orchestrator.sync_account(account.id)

        # m3 was already processed: skipped, not counted
        assert second.processed == 1
        assert second.checkpoint == minutes(3)
        assert load_email(session_factory, account.id, "m2").processed_at is not None

    @pytest.mark.asyncio
    async def test_message_failure_holds_checkpoint(self, orchestrator, fake_adapter, classifier, make_account):
        for n in (1, 2, 3):
            fake_adapter.add(make_message(f"m{n}", minutes(n)))

        def classify(text, context):
            if context["subject"] == "Subject m2":
                raise ValueError("model exploded")
            return None

        classifier.classify.side_effect = classify
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.ok
        assert result.processed == 2
        assert result.errors == 1
        assert result.checkpoint == minutes(1)

    @pytest.mark.asyncio
    async def test_more_matches_than_listing_cap(self, orchestrator, fake_adapter, settings, make_account, session_factory):
        settings.max_candidates = 2
        for n in range(6):
            fake_adapter.add(make_message(f"m{n}", minutes(n + 1)))
        account = make_account(sync_max_emails_per_run=1)

        for _ in range(6):
            result = await orchestrator.sync_account(account.id)
            assert result.ok

        assert fake_adapter.hydrated == ["m0", "m1", "m2", "m3", "m4", "m5"]
        assert load_account(session_factory, account.id).last_sync_checkpoint == minutes(6)

    @pytest.mark.asyncio
    async def test_unresolved_message_holds_checkpoint(self, orchestrator, fake_adapter, make_account, session_factory):
        fake_adapter.add(make_message("old", minutes(1)))
        fake_adapter.add(make_message("new", minutes(2)))
        fake_adapter.untimed.add("old")
        account = make_account(last_sync_checkpoint=T0)

        first = await orchestrator.sync_account(account.id)

        assert first.ok
        assert first.processed == 1
        assert first.errors == 1
        assert first.checkpoint == T0

        fake_adapter.untimed.clear()
        second = await orchestrator.sync_account(account.id)

        # "new" is already processed and not counted again
        assert second.processed == 1
        assert load_email(session_factory, account.id, "old").processed_at is not None
        assert second.checkpoint == minutes(2)

    def test_next_checkpoint(self):
        next_checkpoint = SyncOrchestrator._next_checkpoint

        assert next_checkpoint(None, [], []) is None
        assert next_checkpoint(None, [minutes(1), minutes(3)], []) == minutes(3)
        assert next_checkpoint(None, [minutes(1), minutes(3)], [minutes(2)]) == minutes(1)
        assert next_checkpoint(minutes(5), [minutes(1)], []) == minutes(5)
        assert next_checkpoint(minutes(1), [minutes(2)], [minutes(2)]) == minutes(1)


class TestMessageProcessing:

    @pytest.mark.asyncio
    async def test_analysis_is_stored(self, orchestrator, fake_adapter, classifier, make_account, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        classifier.classify.return_value = ClassificationResult(
            summary="Client asks for a meeting", category="client", priority="High", suggested_actions=["reply"],
        )
        account = make_account()

        await orchestrator.sync_account(account.id)

        email = load_email(session_factory, account.id, "m1")
        assert email.category == "client"
        assert email.priority == "High"
        assert email.suggested_actions == ["reply"]
        assert email.ai_analysis["summary"] == "Client asks for a meeting"
        assert email.body_snippet == "Hello m1"
        assert email.actions_taken == []
        assert email.processed_at is not None

        context = classifier.classify.call_args.args[1]
        assert context["subject"] == "Subject m1"
        assert context["date"] == minutes(1).isoformat()

    @pytest.mark.asyncio
    async def test_already_processed_message_is_skipped(self, orchestrator, fake_adapter, classifier, make_account, session_factory):
        fake_adapter.add(make_message("m1", minutes(1), subject="Updated subject"))
        account = make_account()
        with session_scope(session_factory) as db:
            repo = EmailRepository(db)
            email, _ = repo.upsert_email(account.id, "m1", {"subject": "Old subject"})
            repo.record_actions(email.id, ["read"])

        result = await orchestrator.sync_account(account.id)

        assert result.processed == 0
        assert result.checkpoint == minutes(1)
        classifier.classify.assert_not_called()
        assert fake_adapter.operations == []
        assert load_email(session_factory, account.id, "m1").subject == "Updated subject"

    @pytest.mark.asyncio
    async def test_rule_actions_applied_in_order(self, orchestrator, fake_adapter, make_account, make_rule, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        rule = make_rule({"sender_domain": "example.com"}, ["star", "read"])
        account = make_account()

        await orchestrator.sync_account(account.id)

        assert fake_adapter.operations == [("m1", MessageOperation.STAR), ("m1", MessageOperation.MARK_READ)]
        email = load_email(session_factory, account.id, "m1")
        assert email.actions_taken == ["star", "read"]
        assert email.matched_rule_ids == [str(rule.id)]

    @pytest.mark.asyncio
    async def test_delete_wins_over_other_actions(self, orchestrator, fake_adapter, make_account, make_rule, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        make_rule({"sender_domain": "example.com"}, ["star", "archive", "draft"])
        make_rule({"subject_contains": "subject m1"}, ["delete"])
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert fake_adapter.operations == [("m1", MessageOperation.TRASH)]
        assert fake_adapter.drafts == []
        assert result.deleted == 1
        assert load_email(session_factory, account.id, "m1").action_taken == "delete"

    @pytest.mark.asyncio
    async def test_rejected_action_does_not_stop_the_run(self, orchestrator, fake_adapter, make_account, make_rule, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        fake_adapter.add(make_message("m2", minutes(2)))
        fake_adapter.rejecting.add("m1")
        make_rule({"sender_domain": "example.com"}, ["archive"])
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.ok
        assert result.processed == 2
        assert result.errors == 1
        assert result.checkpoint == minutes(2)
        assert fake_adapter.operations == [("m2", MessageOperation.ARCHIVE)]
        assert load_email(session_factory, account.id, "m1").actions_taken == []

    @pytest.mark.asyncio
    async def test_auto_trash_spam(self, orchestrator, fake_adapter, classifier, make_account, make_user_settings):
        fake_adapter.add(make_message("m1", minutes(1)))
        classifier.classify.return_value = ClassificationResult(category="spam", is_useless=True)
        make_user_settings(preferences={"auto_trash_spam": True})
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.deleted == 1
        assert fake_adapter.operations == [("m1", MessageOperation.TRASH)]


class TestDrafts:

    @pytest.mark.asyncio
    async def test_rule_draft_with_instructions_and_attachment(
        self, orchestrator, fake_adapter, classifier, make_account, make_rule, settings, session_factory,
    ):
        folder = AttachmentStore(settings.attachments_dir).base_dir / "user-1"
        folder.mkdir(parents=True)
        (folder / "terms.pdf").write_bytes(b"%PDF-1.4")
        fake_adapter.add(make_message("m1", minutes(1)))
        make_rule(
            {"sender_domain": "example.com"}, ["draft"],
            instructions="Attach our terms",
            attachments=[
                {"name": "terms.pdf", "path": "user-1/terms.pdf", "type": "application/pdf"},
                {"name": "gone.pdf", "path": "user-1/gone.pdf"},
            ],
        )
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.drafted == 1
        assert fake_adapter.drafts == [
            ("m1", "Generated reply", [DraftAttachment("terms.pdf", "application/pdf", b"%PDF-1.4")]),
        ]
        assert classifier.generate_draft_reply.call_args.args[3] == "Attach our terms"
        assert load_email(session_factory, account.id, "m1").draft_id == "draft-m1"

    @pytest.mark.asyncio
    async def test_smart_draft_uses_suggested_reply(self, orchestrator, fake_adapter, classifier, make_account, make_user_settings):
        fake_adapter.add(make_message("m1", minutes(1)))
        classifier.classify.return_value = ClassificationResult(
            category="client", suggested_actions=["reply"], draft_response="Tuesday works for me.",
        )
        make_user_settings(preferences={"smart_drafts": True})
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.drafted == 1
        assert fake_adapter.drafts == [("m1", "Tuesday works for me.", [])]
        classifier.generate_draft_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_draft_content_skips_draft(self, orchestrator, fake_adapter, classifier, make_account, make_rule):
        fake_adapter.add(make_message("m1", minutes(1)))
        classifier.generate_draft_reply.return_value = None
        make_rule({"sender_domain": "example.com"}, ["draft"])
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert result.ok
        assert result.drafted == 0
        assert fake_adapter.drafts == []


class TestRunBookkeeping:

    @pytest.mark.asyncio
    async def test_successful_run_is_logged(self, orchestrator, fake_adapter, make_account, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        runs = load_runs(session_factory)
        assert [(r.status, r.emails_processed) for r in runs] == [("success", 1)]
        assert str(runs[0].id) == result.run_id
        stored = load_account(session_factory, account.id)
        assert stored.last_sync_status == "success"
        assert stored.last_sync_at is not None

        with session_scope(session_factory) as db:
            states = [e.agent_state for e in ProcessingLogRepository(db).list_events(runs[0].id)]
        assert states[0] == "Fetching"
        assert states[-1] == "Completed"

    @pytest.mark.asyncio
    async def test_token_failure_marks_account_and_run(self, orchestrator, tokens, make_account, session_factory):
        tokens.ensure_valid.side_effect = TokenExpiredError("invalid_grant")
        account = make_account()

        result = await orchestrator.sync_account(account.id)

        assert not result.ok
        assert result.error == "Session expired. Please reconnect your account in Settings."
        stored = load_account(session_factory, account.id)
        assert stored.last_sync_status == "error"
        assert stored.last_sync_error == result.error
        assert [(r.status, r.error_message) for r in load_runs(session_factory)] == [("failed", result.error)]
        assert len(orchestrator.locks) == 0

    @pytest.mark.asyncio
    async def test_listing_failure_keeps_checkpoint(self, orchestrator, fake_adapter, make_account, session_factory):
        fake_adapter.list_error = RuntimeError("connection reset")
        account = make_account(last_sync_checkpoint=minutes(4))

        result = await orchestrator.sync_account(account.id)

        assert not result.ok
        assert load_account(session_factory, account.id).last_sync_checkpoint == minutes(4)

    @pytest.mark.asyncio
    async def test_persistence_failure_aborts_run(self, orchestrator, fake_adapter, make_account, session_factory, monkeypatch):
        fake_adapter.add(make_message("m1", minutes(1)))
        account = make_account()

        def broken_upsert(self, account_id, external_id, fields):
            raise PersistenceError("disk full")

        monkeypatch.setattr(EmailRepository, "upsert_email", broken_upsert)

        result = await orchestrator.sync_account(account.id)

        assert result.error == "disk full"
        assert load_account(session_factory, account.id).last_sync_checkpoint is None
        assert load_runs(session_factory)[0].status == "failed"

    @pytest.mark.asyncio
    async def test_locked_account_is_skipped(self, orchestrator, make_account, session_factory):
        account = make_account()
        orchestrator.locks.try_acquire(account.id)

        result = await orchestrator.sync_account(account.id)

        assert result.skipped
        assert load_runs(session_factory) == []

    @pytest.mark.asyncio
    async def test_inactive_account_is_skipped(self, orchestrator, make_account, session_factory):
        account = make_account(is_active=False)

        result = await orchestrator.sync_account(account.id)

        assert result.skipped
        assert result.error
        assert load_runs(session_factory) == []

    @pytest.mark.asyncio
    async def test_sync_user_runs_every_active_account(self, orchestrator, fake_adapter, make_account, session_factory):
        fake_adapter.add(make_message("m1", minutes(1)))
        first = make_account()
        second = make_account(provider="outlook")
        make_account(user_id="user-2")

        results = await orchestrator.sync_user("user-1")

        assert set(results) == {str(first.id), str(second.id)}
        assert all(r.processed == 1 for r in results.values())
        with session_scope(session_factory) as db:
            assert db.query(Email).count() == 2

    @pytest.mark.asyncio
    async def test_sync_user_without_accounts(self, orchestrator):
        assert await orchestrator.sync_user("nobody") == {}
