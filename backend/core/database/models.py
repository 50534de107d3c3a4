"""
SQLAlchemy Database Models

Stores:
- Connected mailbox accounts (OAuth tokens, sync checkpoint, sync status)
- Synchronized emails (classification, suggested/taken actions)
- User automation rules
- Processing logs (one row per sync run) and fine-grained processing events
- Per-user settings and bring-your-own OAuth credentials

Encryption:
- OAuth tokens, client secrets and LLM API keys are stored as CredentialVault blobs
- See backend/core/auth/vault.py for the formats accepted on read

Timestamps are naive UTC throughout.
"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Index,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention for every DateTime column)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EmailAccount(Base):
    """
    A mailbox connected through OAuth.

    Created on a successful OAuth callback / device-code completion, updated on
    every token refresh and sync run, deleted on disconnect (cascades emails and logs).
    """
    __tablename__ = "email_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # gmail | outlook
    email_address = Column(String(500), nullable=False)

    # Tokens (CredentialVault blobs)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)  # None = provider-managed, treated as non-expiring
    scopes = Column(JSON, default=list)
    is_active = Column(Boolean, nullable=False, default=True)

    # Incremental sync
    last_sync_checkpoint = Column(DateTime)  # Timestamp of newest processed message (never decreases)
    sync_start_date = Column(DateTime)  # Ignore messages received before this date
    sync_max_emails_per_run = Column(Integer, default=50)
    last_sync_at = Column(DateTime)
    last_sync_status = Column(String(20), nullable=False, default="idle")  # idle | syncing | success | error
    last_sync_error = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    emails = relationship("Email", back_populates="account", cascade="all, delete-orphan")
    processing_logs = relationship("ProcessingLog", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('user_id', 'email_address', name='uq_email_accounts_user_address'),
        CheckConstraint("provider IN ('gmail', 'outlook')", name='ck_email_accounts_provider'),
    )

    def __repr__(self):
        return f"<EmailAccount {self.provider}:{self.email_address}>"


class Email(Base):
    """
    A message seen by a sync run.

    Created/updated exclusively by the sync orchestrator; (account_id, external_id) is unique.
    """
    __tablename__ = "emails"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey('email_accounts.id', ondelete='CASCADE'), nullable=False, index=True)
    external_id = Column(String(500), nullable=False)  # Provider message id
    thread_id = Column(String(500))

    subject = Column(Text)
    sender = Column(String(500))
    recipient = Column(Text)
    date = Column(DateTime, index=True)
    body_snippet = Column(Text)

    # Classification
    category = Column(String(50), index=True)
    sentiment = Column(String(20))
    priority = Column(String(20))
    is_useless = Column(Boolean, default=False)
    ai_analysis = Column(JSON)
    suggested_actions = Column(JSON, default=list)

    # Automation outcome
    actions_taken = Column(JSON, default=list)
    action_taken = Column(String(20))  # Most significant action (delete wins)
    matched_rule_ids = Column(JSON, default=list)
    draft_id = Column(String(500))
    processed_at = Column(DateTime)  # Set once classification + rules ran

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("EmailAccount", back_populates="emails")

    __table_args__ = (
        Index('ix_emails_account_external_id', 'account_id', 'external_id', unique=True),
        Index('ix_emails_action_created', 'action_taken', 'created_at'),
    )

    def __repr__(self):
        return f"<Email {self.external_id}: {(self.subject or '')[:50]}>"


class Rule(Base):
    """
    User automation rule.

    condition: {"category": "newsletter", "older_than_days": 30}
    actions: ["archive", "read"]
    """
    __tablename__ = "rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    condition = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=list)
    is_enabled = Column(Boolean, nullable=False, default=True)
    instructions = Column(Text)  # Only used by draft actions
    attachments = Column(JSON, default=list)  # [{name, path, type, size}]
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<Rule {self.name} -> {self.actions}>"


class ProcessingLog(Base):
    """One row per sync run; created at run start, closed at run end."""
    __tablename__ = "processing_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey('email_accounts.id', ondelete='CASCADE'), index=True)
    status = Column(String(20), nullable=False, default="running")  # running | success | failed
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime)
    emails_processed = Column(Integer, default=0)
    emails_deleted = Column(Integer, default=0)
    emails_drafted = Column(Integer, default=0)
    error_message = Column(Text)

    account = relationship("EmailAccount", back_populates="processing_logs")
    events = relationship("ProcessingEvent", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_processing_logs_user_status_started', 'user_id', 'status', 'started_at'),
    )


class ProcessingEvent(Base):
    """Append-only trace entry tied to a run (best-effort)."""
    __tablename__ = "processing_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey('processing_logs.id', ondelete='CASCADE'), nullable=False, index=True)
    email_id = Column(UUID(as_uuid=True))  # No FK: events outlive pruned emails
    event_type = Column(String(20), nullable=False)  # info | analysis | action | error
    agent_state = Column(String(50))  # Fetching, Analyzing, Decided, Acting, ...
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("event_type IN ('info', 'analysis', 'action', 'error')", name='ck_processing_events_type'),
    )


class UserSettings(Base):
    """Per-user preferences."""
    __tablename__ = "user_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, unique=True)
    llm_model = Column(String(100))
    llm_base_url = Column(String(500))
    llm_api_key = Column(Text)  # CredentialVault blob
    sync_interval_minutes = Column(Integer, nullable=False, default=5)
    preferences = Column(JSON, default=dict)  # Feature toggles
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('sync_interval_minutes >= 1 AND sync_interval_minutes <= 60', name='ck_user_settings_interval'),
    )


class ProviderIntegration(Base):
    """
    Bring-your-own OAuth credentials (override the system-wide client).

    credentials: {"client_id": ..., "client_secret": <vault blob>, "tenant_id": ...}
    """
    __tablename__ = "provider_integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # gmail | outlook
    credentials = Column(JSON, nullable=False, default=dict)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_provider_integrations_user_provider'),
    )
