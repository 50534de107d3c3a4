"""
Shared fixtures: settings, credential vault, a file-backed SQLite database,
builders for accounts/rules/user settings, and an in-memory provider adapter.
"""
from datetime import timedelta
from typing import Dict, List

import pytest
from cryptography.fernet import Fernet

from backend.core.auth.vault import CredentialVault
from backend.core.config import Settings
from backend.core.database import (
    EmailAccount, Rule, UserSettings, ProviderIntegration, create_tables, init_db, session_scope,
)
from backend.tests.fakes import FakeAdapter, T0


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        token_encryption_key=Fernet.generate_key().decode(),
        gmail_client_id="system-google-id",
        gmail_client_secret="system-google-secret",
        gmail_redirect_uri="http://localhost/callback",
        ms_graph_client_id="system-ms-id",
        llm_api_key=None,
        attachments_dir=str(tmp_path / "attachments"),
    )


@pytest.fixture
def vault(settings):
    return CredentialVault.from_settings(settings)


@pytest.fixture
def session_factory(settings):
    factory = init_db(settings.database_url, max_retries=1)
    create_tables(factory.kw['bind'])
    yield factory
    factory.kw['bind'].dispose()


@pytest.fixture
def make_account(session_factory, vault):
    """Builder: make_account(provider='gmail', **overrides) -> EmailAccount"""
    counter = {"n": 0}

    def build(provider: str = "gmail", user_id: str = "user-1", **overrides) -> EmailAccount:
        counter["n"] += 1
        values = dict(
            user_id=user_id,
            provider=provider,
            email_address=f"person{counter['n']}@example.com",
            access_token=vault.encrypt("access-token"),
            refresh_token=vault.encrypt("refresh-token"),
            token_expires_at=None,
            is_active=True,
            sync_max_emails_per_run=50,
        )
        values.update(overrides)
        with session_scope(session_factory) as db:
            account = EmailAccount(**values)
            db.add(account)
        return account

    return build


@pytest.fixture
def make_rule(session_factory):
    """Builder: make_rule(condition, actions, user_id='user-1', **overrides) -> Rule"""
    counter = {"n": 0}

    def build(condition: Dict, actions: List[str], user_id: str = "user-1", **overrides) -> Rule:
        counter["n"] += 1
        values = dict(
            user_id=user_id,
            name=f"Rule {counter['n']}",
            condition=condition,
            actions=actions,
            is_enabled=True,
            created_at=T0 + timedelta(seconds=counter["n"]),
        )
        values.update(overrides)
        with session_scope(session_factory) as db:
            rule = Rule(**values)
            db.add(rule)
        return rule

    return build


@pytest.fixture
def make_user_settings(session_factory):
    def build(user_id: str = "user-1", **overrides) -> UserSettings:
        with session_scope(session_factory) as db:
            user_settings = UserSettings(user_id=user_id, **overrides)
            db.add(user_settings)
        return user_settings

    return build


@pytest.fixture
def make_integration(session_factory):
    def build(provider: str, credentials: Dict, user_id: str = "user-1", is_enabled: bool = True) -> ProviderIntegration:
        with session_scope(session_factory) as db:
            integration = ProviderIntegration(user_id=user_id, provider=provider, credentials=credentials, is_enabled=is_enabled)
            db.add(integration)
        return integration

    return build


@pytest.fixture
def fake_adapter(vault):
    return FakeAdapter(vault)
