"""Database module"""
from .models import (
    Base, EmailAccount, Email, Rule, ProcessingLog, ProcessingEvent,
    UserSettings, ProviderIntegration, utcnow,
)
from .connection import init_db, create_db_engine, create_tables, session_scope

__all__ = [
    'Base',
    'EmailAccount',
    'Email',
    'Rule',
    'ProcessingLog',
    'ProcessingEvent',
    'UserSettings',
    'ProviderIntegration',
    'utcnow',
    'init_db',
    'create_db_engine',
    'create_tables',
    'session_scope',
]
