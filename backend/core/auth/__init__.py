"""
Authentication for mailbox accounts.

- CredentialVault: tokens and client secrets encrypted at rest
- GoogleOAuthClient / MicrosoftOAuthClient: provider token endpoints
- TokenLifecycle: refresh-before-expiry for stored accounts
"""

from .vault import CredentialVault, generate_encryption_key, generate_secure_token
from .oauth import GoogleOAuthClient, MicrosoftOAuthClient, OAuthClientCredentials, TokenGrant
from .token_lifecycle import TokenLifecycle

__all__ = [
    'CredentialVault',
    'generate_encryption_key',
    'generate_secure_token',
    'GoogleOAuthClient',
    'MicrosoftOAuthClient',
    'OAuthClientCredentials',
    'TokenGrant',
    'TokenLifecycle',
]
