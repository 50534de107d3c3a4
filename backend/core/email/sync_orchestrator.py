"""
Per-account synchronization.

One run = one EmailAccount:
1. Ensure a valid token
2. Fetch unseen messages oldest-first, bounded by the account's per-run cap
3. Per message: normalize, classify, upsert the Email row, evaluate rules,
   apply the resulting actions, record outcomes and events
4. Advance the checkpoint and close the ProcessingLog

A failed action is recorded and the run continues; token, listing and
persistence failures abort the run and mark the ProcessingLog failed.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from backend.core.database import session_scope
from backend.core.database.repository import (
    AccountRepository, EmailRepository, ProcessingLogRepository,
)
from backend.core.errors import ActionExecutionError, MailSyncError, PersistenceError
from .event_logger import AgentState, ProcessingEventLogger
from .providers.base import FetchOptions, MessageOperation, ProviderMessage
from .rule_engine import ActionPlan, AutomationRule, DraftRequest, MessageFacts

logger = logging.getLogger(__name__)

ACTION_OPERATIONS = {
    'delete': MessageOperation.TRASH,
    'archive': MessageOperation.ARCHIVE,
    'read': MessageOperation.MARK_READ,
    'star': MessageOperation.STAR,
}

SNIPPET_CHARS = 500


@dataclass
class SyncResult:
    account_id: str
    processed: int = 0
    deleted: int = 0
    drafted: int = 0
    errors: int = 0
    has_more: bool = False
    skipped: bool = False  # Another run held the account
    checkpoint: Optional[datetime] = None
    run_id: Optional[str] = None
    error: Optional[str] = None  # User-facing message when the run failed

    @property
    def ok(self) -> bool:
        return self.error is None


class AccountLockRegistry:
    """
    Non-blocking per-account guard shared by scheduler ticks and manual triggers.

    Holds only the ids of accounts currently syncing.
    """

    def __init__(self):
        self._held: Set[str] = set()

    def try_acquire(self, account_id) -> bool:
        key = str(account_id)
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, account_id) -> None:
        self._held.discard(str(account_id))

    def is_locked(self, account_id) -> bool:
        return str(account_id) in self._held

    def __len__(self) -> int:
        return len(self._held)


class SyncOrchestrator:
    """Runs account syncs; every collaborator is injected."""

    def __init__(
        self,
        session_factory,
        token_lifecycle,
        adapters,
        normalizer,
        classifiers,
        rule_engine,
        attachment_store,
        settings,
        locks: Optional[AccountLockRegistry] = None,
    ):
        """
        Args:
            session_factory: From init_db()
            token_lifecycle: TokenLifecycle
            adapters: ProviderAdapters (gmail/outlook)
            normalizer: ContentNormalizer
            classifiers: ClassifierFactory
            rule_engine: RuleEngine
            attachment_store: AttachmentStore for rule attachments
            settings: Settings
            locks: Shared AccountLockRegistry (one per process)
        """
        self.session_factory = session_factory
        self.tokens = token_lifecycle
        self.adapters = adapters
        self.normalizer = normalizer
        self.classifiers = classifiers
        self.rules = rule_engine
        self.attachments = attachment_store
        self.settings = settings
        self.locks = locks or AccountLockRegistry()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sync_account(self, account_id) -> SyncResult:
        """
        Sync one account.

        Never raises for account-level failures: they are recorded on the
        account, in the ProcessingLog and in SyncResult.error.
        """
        key = str(account_id)
        if not self.locks.try_acquire(key):
            logger.info(f"Account {key} is already syncing, skipping")
            return SyncResult(account_id=key, skipped=True)

        try:
            return await self._run(key)
        finally:
            self.locks.release(key)

    async def sync_user(self, user_id: str) -> Dict[str, SyncResult]:
        """Sync all of a user's active accounts concurrently."""
        with session_scope(self.session_factory) as db:
            account_ids = [str(a.id) for a in AccountRepository(db).list_active_accounts(user_id)]

        if not account_ids:
            logger.debug(f"No active accounts for user {user_id}")
            return {}

        outcomes = await asyncio.gather(*(self.sync_account(a) for a in account_ids), return_exceptions=True)

        results = {}
        for account_id, outcome in zip(account_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Account sync failed for {account_id}: {outcome}")
                outcome = SyncResult(account_id=account_id, error=str(outcome))
            results[account_id] = outcome
        return results

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(self, account_id: str) -> SyncResult:
        try:
            with session_scope(self.session_factory) as db:
                accounts = AccountRepository(db)
                account = accounts.get_account(account_id)
                if account is None or not account.is_active:
                    logger.warning(f"Account {account_id} not found or inactive")
                    return SyncResult(account_id=account_id, skipped=True, error="Account not found or inactive")

                accounts.mark_sync_started(account.id)
                run = ProcessingLogRepository(db).start_run(account.user_id, account.id)
                user_settings = accounts.get_user_settings(account.user_id)
                rules = [AutomationRule.from_model(r) for r in accounts.get_enabled_rules(account.user_id)]
        except PersistenceError as e:
            logger.error(f"Could not start sync for account {account_id}: {e}")
            return SyncResult(account_id=account_id, error=e.user_message)

        result = SyncResult(account_id=account_id, run_id=str(run.id))
        events = ProcessingEventLogger(self.session_factory, run.id)
        logger.info(f"Syncing {account.provider} account {account.email_address} ({len(rules)} rules)")

        try:
            checkpoint = await self._process_account(account, user_settings, rules, result, events)
        except MailSyncError as e:
            logger.error(f"Sync failed for {account.email_address}: {e}")
            self._record_failure(account, run.id, result, e.user_message)
            events.error(AgentState.ERROR, e)
            return result
        except Exception as e:
            logger.exception(f"Unexpected error syncing {account.email_address}: {e}")
            self._record_failure(account, run.id, result, f"Unexpected error: {e}")
            events.error(AgentState.ERROR, e)
            return result

        try:
            with session_scope(self.session_factory) as db:
                updated = AccountRepository(db).mark_sync_succeeded(account.id, checkpoint)
                ProcessingLogRepository(db).complete_run(run.id, result.processed, result.deleted, result.drafted)
        except PersistenceError as e:
            self._record_failure(account, run.id, result, e.user_message)
            return result
        result.checkpoint = updated.last_sync_checkpoint

        events.info(AgentState.COMPLETED, "Sync completed", {
            "processed": result.processed,
            "deleted": result.deleted,
            "drafted": result.drafted,
            "errors": result.errors,
            "has_more": result.has_more,
        })
        logger.info(
            f"Sync complete for {account.email_address}: {result.processed} processed, "
            f"{result.deleted} deleted, {result.drafted} drafted, {result.errors} errors"
            f"{' (more pending)' if result.has_more else ''}"
        )
        return result

    async def _process_account(self, account, user_settings, rules, result: SyncResult, events) -> Optional[datetime]:
        """Fetch and process one batch; returns the new checkpoint candidate."""
        events.info(AgentState.FETCHING, f"Starting sync for {account.email_address}")

        account = await self.tokens.ensure_valid(account)
        adapter = self.adapters.for_account(account)

        options = FetchOptions(
            limit=account.sync_max_emails_per_run or self.settings.default_max_emails_per_run,
            max_candidates=self.settings.max_candidates,
            since=account.last_sync_checkpoint or account.sync_start_date,
        )
        fetched = await adapter.fetch_oldest_first(account, options)
        result.has_more = fetched.has_more

        events.info(AgentState.FETCHING, f"Fetched {len(fetched.messages)} messages", {
            "candidates": fetched.candidate_count,
            "failed_to_fetch": len(fetched.skipped),
            "unresolved": len(fetched.unresolved),
            "has_more": fetched.has_more,
        })

        # Nothing at or after the oldest failure may move the checkpoint
        failed_at: List[datetime] = [c.timestamp for c in fetched.skipped]
        result.errors += len(fetched.skipped) + len(fetched.unresolved)

        classifier = self.classifiers.for_user(user_settings)
        preferences = dict(user_settings.preferences or {}) if user_settings else {}
        done: List[datetime] = []

        for message in fetched.messages:
            try:
                await self._process_message(account, adapter, classifier, rules, preferences, message, result, events)
                done.append(message.timestamp)
            except MailSyncError:
                # Token, transport and persistence problems affect every remaining message
                raise
            except Exception as e:
                logger.error(f"Failed to process message {message.id}: {e}")
                result.errors += 1
                failed_at.append(message.timestamp)
                events.error(AgentState.ERROR, e)

        if fetched.unresolved:
            # Their receive time is unknown, so any advance could pass them
            logger.warning(
                f"Holding checkpoint for {account.email_address}: "
                f"{len(fetched.unresolved)} messages could not be placed in time order"
            )
            return account.last_sync_checkpoint
        return self._next_checkpoint(account.last_sync_checkpoint, done, failed_at)

    @staticmethod
    def _next_checkpoint(previous: Optional[datetime], done: List[datetime], failed_at: List[datetime]) -> Optional[datetime]:
        """Newest processed timestamp strictly older than the first failure; never below previous."""
        barrier = min(failed_at) if failed_at else None
        eligible = [t for t in done if barrier is None or t < barrier]
        candidate = max(eligible) if eligible else None
        if previous is None:
            return candidate
        if candidate is None:
            return previous
        return max(previous, candidate)

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    async def _process_message(self, account, adapter, classifier, rules, preferences, message: ProviderMessage, result: SyncResult, events) -> None:
        base_fields = {
            "thread_id": message.thread_id,
            "subject": message.subject,
            "sender": message.sender,
            "recipient": message.recipient,
            "date": message.date or message.timestamp,
        }

        with session_scope(self.session_factory) as db:
            emails = EmailRepository(db)
            existing = emails.get_by_external_id(account.id, message.id)
            if existing is not None and existing.processed_at is not None:
                emails.upsert_email(account.id, message.id, base_fields)
                already_processed = True
            else:
                already_processed = False

        if already_processed:
            logger.debug(f"Message already processed: {message.id}")
            events.info(AgentState.SKIPPED, "Already processed", {"message_id": message.id}, email_id=existing.id)
            return

        events.info(AgentState.ANALYZING, f"Analyzing email: {message.subject}", {"message_id": message.id})
        clean_text = self.normalizer.clean(message.body or message.snippet)
        analysis = await classifier.classify(clean_text, {
            "subject": message.subject,
            "sender": message.sender,
            "date": message.date.isoformat() if message.date else "",
            "headers": message.headers,
            "preferences": preferences,
        })

        fields = dict(base_fields, body_snippet=(message.snippet or clean_text)[:SNIPPET_CHARS])
        if analysis is not None:
            fields.update(
                category=analysis.category,
                sentiment=analysis.sentiment,
                priority=analysis.priority,
                is_useless=analysis.is_useless,
                ai_analysis=analysis.model_dump(),
                suggested_actions=list(analysis.suggested_actions),
            )

        with session_scope(self.session_factory) as db:
            email, _ = EmailRepository(db).upsert_email(account.id, message.id, fields)
        result.processed += 1

        if analysis is not None:
            events.analysis(AgentState.DECIDED, email.id, analysis.model_dump())
        else:
            events.info(AgentState.SKIPPED, "AI analysis unavailable, applying metadata rules only", email_id=email.id)

        facts = MessageFacts(
            sender=message.sender,
            subject=message.subject,
            body=clean_text,
            received_at=message.date or message.timestamp,
            category=analysis.category if analysis else None,
            sentiment=analysis.sentiment if analysis else None,
            priority=analysis.priority if analysis else None,
            is_useless=analysis.is_useless if analysis else False,
            suggested_actions=list(analysis.suggested_actions) if analysis else [],
            draft_response=analysis.draft_response if analysis else None,
        )
        plan = self.rules.evaluate(rules, facts, preferences)

        if plan.draft is not None and not plan.draft.body:
            plan.draft.body = facts.draft_response

        taken, draft_id = await self._apply_plan(account, adapter, classifier, message, clean_text, email.id, plan, result, events)

        with session_scope(self.session_factory) as db:
            EmailRepository(db).record_actions(email.id, taken, plan.matched_rule_ids, draft_id)

    async def _apply_plan(self, account, adapter, classifier, message, clean_text, email_id, plan: ActionPlan, result: SyncResult, events):
        taken: List[str] = []
        draft_id = None

        for action in plan.actions:
            events.action(AgentState.ACTING, email_id, action, reason=self._reason(plan))
            try:
                if action == 'draft':
                    draft_id = await self._create_draft(account, adapter, classifier, message, clean_text, plan.draft, events, email_id)
                    if draft_id:
                        taken.append('draft')
                        result.drafted += 1
                    continue

                await adapter.mutate(account, message.id, ACTION_OPERATIONS[action])
                taken.append(action)
                if action == 'delete':
                    result.deleted += 1
            except ActionExecutionError as e:
                logger.warning(f"Action {action} failed for message {message.id}: {e}")
                result.errors += 1
                events.error(AgentState.ERROR, e, email_id)

        return taken, draft_id

    async def _create_draft(self, account, adapter, classifier, message, clean_text, draft: Optional[DraftRequest], events, email_id) -> Optional[str]:
        draft = draft or DraftRequest()
        body = None
        if draft.instructions or not draft.body:
            body = await classifier.generate_draft_reply(message.subject, message.sender, clean_text, draft.instructions)
        body = body or draft.body

        if not body:
            events.info(AgentState.SKIPPED, "No draft content generated", email_id=email_id)
            return None

        attachments = self.attachments.load_all(draft.attachments)
        return await adapter.create_reply_draft(account, message.id, body, attachments)

    @staticmethod
    def _reason(plan: ActionPlan) -> Optional[str]:
        if plan.matched_rule_ids:
            return f"Matched rules: {', '.join(plan.matched_rule_ids)}"
        return "User preference"

    def _record_failure(self, account, run_id, result: SyncResult, message: str) -> None:
        result.error = message
        try:
            with session_scope(self.session_factory) as db:
                AccountRepository(db).mark_sync_failed(account.id, message)
                ProcessingLogRepository(db).fail_run(run_id, message, result.processed, result.deleted, result.drafted)
        except PersistenceError as e:
            logger.error(f"Could not record sync failure for {account.email_address}: {e}")
