"""
Database Repository - High-level database operations for account synchronization.

Repositories wrap a SQLAlchemy session owned by the caller (usually a
`session_scope`); they flush but never commit. Every SQLAlchemy failure is
rolled back and re-raised as PersistenceError.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.errors import PersistenceError
from .models import (
    Email, EmailAccount, ProcessingEvent, ProcessingLog, ProviderIntegration, Rule, UserSettings, utcnow,
)

logger = logging.getLogger(__name__)

IdLike = Union[str, uuid.UUID]


def as_uuid(value: IdLike) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def sanitize_text(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and surrogates that PostgreSQL text columns reject.

    Args:
        text: Input text (message bodies occasionally contain binary junk)
        field_name: Name of field being sanitized (for logging)
        max_length: Maximum length for field (truncates if longer)
    """
    if text is None:
        return None

    if '\x00' in text:
        logger.debug(f"Sanitized {text.count(chr(0))} NUL byte(s) from {field_name}")
    sanitized = text.replace('\x00', '')

    try:
        sanitized.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        sanitized = sanitized.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
        logger.debug(f"Removed surrogate characters from {field_name}")

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
    return sanitized


class _Repository:
    def __init__(self, db: Session):
        """
        Args:
            db: SQLAlchemy session (committed by the caller)
        """
        self.db = db

    @contextmanager
    def _write(self, what: str):
        try:
            yield
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {what}: {e}")
            raise PersistenceError(f"Failed to {what}: {e}") from e


class AccountRepository(_Repository):
    """Accounts, their tokens and sync status, plus per-user settings, integrations and rules."""

    def get_account(self, account_id: IdLike) -> Optional[EmailAccount]:
        return self.db.get(EmailAccount, as_uuid(account_id))

    def list_active_accounts(self, user_id: Optional[str] = None) -> List[EmailAccount]:
        query = select(EmailAccount).where(EmailAccount.is_active.is_(True))
        if user_id is not None:
            query = query.where(EmailAccount.user_id == user_id)
        return list(self.db.scalars(query.order_by(EmailAccount.created_at)))

    def list_active_user_ids(self) -> List[str]:
        query = select(EmailAccount.user_id).where(EmailAccount.is_active.is_(True)).distinct()
        return sorted(self.db.scalars(query))

    def upsert_account(
        self,
        user_id: str,
        provider: str,
        email_address: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> EmailAccount:
        """
        Create or reconnect an account (tokens are vault blobs already).

        Reconnecting keeps the sync checkpoint; a missing refresh token in the
        new grant keeps the stored one.
        """
        with self._write(f"save {provider} account {email_address}"):
            account = self.db.scalars(
                select(EmailAccount).where(
                    EmailAccount.user_id == user_id,
                    EmailAccount.email_address == email_address,
                )
            ).first()

            if account is None:
                account = EmailAccount(user_id=user_id, provider=provider, email_address=email_address)
                self.db.add(account)
                logger.info(f"Connected new {provider} account {email_address} for user {user_id}")
            else:
                logger.info(f"Reconnected {provider} account {email_address} for user {user_id}")

            account.provider = provider
            account.access_token = access_token
            if refresh_token:
                account.refresh_token = refresh_token
            account.token_expires_at = token_expires_at
            account.scopes = list(scopes or [])
            account.is_active = True
            account.last_sync_error = None
        return account

    def update_tokens(
        self,
        account_id: IdLike,
        access_token: str,
        token_expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> EmailAccount:
        with self._write(f"update tokens for account {account_id}"):
            account = self._require(account_id)
            account.access_token = access_token
            account.token_expires_at = token_expires_at
            if refresh_token:
                account.refresh_token = refresh_token
        return account

    def mark_sync_started(self, account_id: IdLike) -> EmailAccount:
        with self._write(f"mark account {account_id} syncing"):
            account = self._require(account_id)
            account.last_sync_status = 'syncing'
        return account

    def mark_sync_succeeded(self, account_id: IdLike, checkpoint: Optional[datetime]) -> EmailAccount:
        """Record a finished run; the checkpoint only ever moves forward."""
        with self._write(f"record sync result for account {account_id}"):
            account = self._require(account_id)
            if checkpoint is not None and (account.last_sync_checkpoint is None or checkpoint > account.last_sync_checkpoint):
                account.last_sync_checkpoint = checkpoint
            account.last_sync_status = 'success'
            account.last_sync_error = None
            account.last_sync_at = utcnow()
        return account

    def mark_sync_failed(self, account_id: IdLike, error_message: str) -> Optional[EmailAccount]:
        with self._write(f"record sync failure for account {account_id}"):
            account = self.get_account(account_id)
            if account is None:
                return None
            account.last_sync_status = 'error'
            account.last_sync_error = error_message
            account.last_sync_at = utcnow()
        return account

    def delete_account(self, user_id: str, account_id: IdLike) -> bool:
        """Delete a user's account (emails and logs cascade). Returns False when not found."""
        with self._write(f"delete account {account_id}"):
            account = self.get_account(account_id)
            if account is None or account.user_id != user_id:
                return False
            self.db.delete(account)
        logger.info(f"Disconnected account {account.email_address} for user {user_id}")
        return True

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        return self.db.scalars(select(UserSettings).where(UserSettings.user_id == user_id)).first()

    def get_integration(self, user_id: str, provider: str) -> Optional[ProviderIntegration]:
        return self.db.scalars(
            select(ProviderIntegration).where(
                ProviderIntegration.user_id == user_id,
                ProviderIntegration.provider == provider,
                ProviderIntegration.is_enabled.is_(True),
            )
        ).first()

    def get_enabled_rules(self, user_id: str) -> List[Rule]:
        """Enabled rules in creation order (the order their actions are applied)."""
        query = (
            select(Rule)
            .where(Rule.user_id == user_id, Rule.is_enabled.is_(True))
            .order_by(Rule.created_at, Rule.id)
        )
        return list(self.db.scalars(query))

    def _require(self, account_id: IdLike) -> EmailAccount:
        account = self.get_account(account_id)
        if account is None:
            raise PersistenceError(f"Account {account_id} not found")
        return account


class EmailRepository(_Repository):
    """Email rows written by sync runs, and their retention."""

    def get_by_external_id(self, account_id: IdLike, external_id: str) -> Optional[Email]:
        return self.db.scalars(
            select(Email).where(Email.account_id == as_uuid(account_id), Email.external_id == external_id)
        ).first()

    def upsert_email(self, account_id: IdLike, external_id: str, fields: Dict[str, Any]) -> Tuple[Email, bool]:
        """
        Insert or update the row for (account_id, external_id).

        Returns:
            Tuple of (Email, is_new)
        """
        with self._write(f"save email {external_id}"):
            email = self.get_by_external_id(account_id, external_id)
            is_new = email is None
            if is_new:
                email = Email(account_id=as_uuid(account_id), external_id=external_id)
                self.db.add(email)

            for name, value in fields.items():
                if isinstance(value, str):
                    value = sanitize_text(value, field_name=name, max_length=500 if name in ('sender', 'thread_id') else None)
                setattr(email, name, value)
        return email, is_new

    def record_actions(
        self,
        email_id: IdLike,
        actions_taken: List[str],
        matched_rule_ids: Optional[List[str]] = None,
        draft_id: Optional[str] = None,
    ) -> Email:
        """Store the actions applied to a message and mark it processed."""
        with self._write(f"record actions for email {email_id}"):
            email = self.db.get(Email, as_uuid(email_id))
            if email is None:
                raise PersistenceError(f"Email {email_id} not found")
            email.actions_taken = list(actions_taken)
            email.action_taken = most_significant_action(actions_taken)
            email.matched_rule_ids = [str(r) for r in (matched_rule_ids or [])]
            if draft_id:
                email.draft_id = draft_id
            email.processed_at = utcnow()
        return email

    def delete_actioned_before(self, action: str, cutoff: datetime) -> int:
        """Delete emails whose action_taken is `action` and that were created before cutoff."""
        with self._write(f"delete {action}-actioned emails"):
            count = (
                self.db.query(Email)
                .filter(Email.action_taken == action, Email.created_at < cutoff)
                .delete(synchronize_session=False)
            )
        return count


ACTION_SIGNIFICANCE = ['delete', 'archive', 'draft', 'star', 'read']


def most_significant_action(actions: List[str]) -> Optional[str]:
    """'delete' beats 'archive' beats 'draft' ...; None when nothing was done."""
    for action in ACTION_SIGNIFICANCE:
        if action in actions:
            return action
    return actions[0] if actions else None


class ProcessingLogRepository(_Repository):
    """Run bookkeeping (ProcessingLog) and the event trail (ProcessingEvent)."""

    def start_run(self, user_id: str, account_id: Optional[IdLike] = None) -> ProcessingLog:
        with self._write(f"start processing log for user {user_id}"):
            log = ProcessingLog(
                user_id=user_id,
                account_id=as_uuid(account_id) if account_id else None,
                status='running',
                started_at=utcnow(),
            )
            self.db.add(log)
        return log

    def complete_run(self, run_id: IdLike, processed: int, deleted: int, drafted: int) -> ProcessingLog:
        return self._close(run_id, 'success', processed, deleted, drafted)

    def fail_run(
        self,
        run_id: IdLike,
        error_message: str,
        processed: int = 0,
        deleted: int = 0,
        drafted: int = 0,
    ) -> ProcessingLog:
        return self._close(run_id, 'failed', processed, deleted, drafted, error_message)

    def _close(self, run_id, status, processed, deleted, drafted, error_message=None) -> ProcessingLog:
        with self._write(f"close processing log {run_id}"):
            log = self.db.get(ProcessingLog, as_uuid(run_id))
            if log is None:
                raise PersistenceError(f"Processing log {run_id} not found")
            log.status = status
            log.completed_at = utcnow()
            log.emails_processed = processed
            log.emails_deleted = deleted
            log.emails_drafted = drafted
            log.error_message = error_message
        return log

    def last_successful_started_at(self, user_id: str) -> Optional[datetime]:
        return self.db.scalars(
            select(ProcessingLog.started_at)
            .where(ProcessingLog.user_id == user_id, ProcessingLog.status == 'success')
            .order_by(ProcessingLog.started_at.desc())
            .limit(1)
        ).first()

    def count_runs(self, user_id: Optional[str] = None) -> int:
        query = self.db.query(ProcessingLog)
        if user_id is not None:
            query = query.filter(ProcessingLog.user_id == user_id)
        return query.count()

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete logs started before cutoff, with their events."""
        with self._write("delete old processing logs"):
            old_runs = select(ProcessingLog.id).where(ProcessingLog.started_at < cutoff)
            self.db.query(ProcessingEvent).filter(
                ProcessingEvent.run_id.in_(old_runs)
            ).delete(synchronize_session=False)
            count = (
                self.db.query(ProcessingLog)
                .filter(ProcessingLog.started_at < cutoff)
                .delete(synchronize_session=False)
            )
        return count

    def add_event(
        self,
        run_id: IdLike,
        event_type: str,
        agent_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        email_id: Optional[IdLike] = None,
    ) -> ProcessingEvent:
        with self._write(f"append {event_type} event to run {run_id}"):
            event = ProcessingEvent(
                run_id=as_uuid(run_id),
                email_id=as_uuid(email_id) if email_id else None,
                event_type=event_type,
                agent_state=agent_state,
                details=details or {},
            )
            self.db.add(event)
        return event

    def list_events(self, run_id: IdLike) -> List[ProcessingEvent]:
        return list(self.db.scalars(
            select(ProcessingEvent)
            .where(ProcessingEvent.run_id == as_uuid(run_id))
            .order_by(ProcessingEvent.created_at)
        ))
