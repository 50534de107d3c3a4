"""
Error taxonomy for account synchronization.

- AuthConfigError: OAuth credentials missing or invalid (user must configure/reconnect)
- TokenExpiredError: token cannot be refreshed (user must reconnect this account)
- ProviderFetchError: listing/transport failure against the mail provider (retried next tick)
- ActionExecutionError: a single message mutation failed (logged, run continues)
- PersistenceError: datastore write failed (run aborted, surfaced in ProcessingLog)
"""
from typing import Optional


class MailSyncError(Exception):
    """Base class; `user_message` is safe to show in last_sync_error."""

    default_user_message = "Synchronization failed"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message or self.default_user_message


class AuthConfigError(MailSyncError):
    default_user_message = "OAuth credentials are not configured. Please configure the provider in Settings."


class TokenExpiredError(MailSyncError):
    default_user_message = "Session expired. Please reconnect your account in Settings."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, user_message or self.default_user_message)


class ProviderFetchError(MailSyncError):
    default_user_message = "Failed to fetch messages from the mail provider"


class ActionExecutionError(MailSyncError):
    """Mutation of one message failed."""

    def __init__(self, message: str, action: Optional[str] = None, message_id: Optional[str] = None):
        super().__init__(message)
        self.action = action
        self.message_id = message_id


class PersistenceError(MailSyncError):
    default_user_message = "Failed to save synchronization results"
