"""
Credential Vault

Encrypts provider tokens (and other OAuth secrets) at rest.
Uses Fernet (AES-128 in CBC mode with HMAC-SHA256); every token carries its own
IV and MAC, so no nonce bookkeeping is stored next to the ciphertext.

STORAGE FORMATS ACCEPTED BY decrypt():
- Fernet token (starts with 'gAAAAA') - current format, produced by encrypt()
- Legacy 'salt:iv:tag:ciphertext' (base64 parts, AES-256-GCM, scrypt-derived key)
  written by earlier deployments - still decrypted for backward compatibility
- Anything else is treated as plaintext that predates encryption

KEY ROTATION SUPPORT:
- TOKEN_ENCRYPTION_KEY: primary secret used for all NEW encryptions
- TOKEN_ENCRYPTION_KEY_OLD: comma-separated previous secrets, tried on decrypt

decrypt() never raises for malformed input: a blob that fails authentication
or does not have the expected shape is returned unchanged.
"""
import base64
import binascii
import logging
import secrets
from typing import List, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

FERNET_PREFIX = 'gAAAAA'
DEV_SECRET = 'dev-key-not-secure'

# Legacy format parameters (scrypt N=2^14, r=8, p=1 -> 32 byte AES-256-GCM key)
LEGACY_KEY_LENGTH = 32
LEGACY_SCRYPT_N = 2 ** 14
LEGACY_SCRYPT_R = 8
LEGACY_SCRYPT_P = 1


def generate_encryption_key() -> str:
    """Generate a new Fernet key suitable for TOKEN_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode('utf-8')


def generate_secure_token(length: int = 32) -> str:
    """Random hex token (OAuth state, poll handles)."""
    return secrets.token_hex(length)


def _fernet_for_secret(secret: str) -> Fernet:
    """
    Build a Fernet cipher from a secret.

    A secret that already is a Fernet key is used as-is; any other passphrase
    is stretched to a key with HKDF-SHA256.
    """
    try:
        return Fernet(secret.encode('utf-8'))
    except (ValueError, binascii.Error):
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b'credential-vault',
        ).derive(secret.encode('utf-8'))
        return Fernet(base64.urlsafe_b64encode(derived))


def _legacy_key(secret: str, salt: bytes) -> bytes:
    kdf = Scrypt(
        salt=salt,
        length=LEGACY_KEY_LENGTH,
        n=LEGACY_SCRYPT_N,
        r=LEGACY_SCRYPT_R,
        p=LEGACY_SCRYPT_P,
    )
    return kdf.derive(secret.encode('utf-8'))


class CredentialVault:
    """
    Stateless encrypt/decrypt for secrets stored in the database.

    Usage:
        vault = CredentialVault(settings.token_encryption_key, settings.old_encryption_keys)
        stored = vault.encrypt(access_token)
        access_token = vault.decrypt(stored)
    """

    def __init__(self, secret: Optional[str], previous_secrets: Sequence[str] = (), require_secret: bool = False):
        """
        Args:
            secret: Primary secret (Fernet key or passphrase)
            previous_secrets: Older secrets accepted for decryption only
            require_secret: Refuse the development fallback secret (production)

        Raises:
            ValueError: If no secret is given and require_secret is set
        """
        if not secret:
            if require_secret:
                raise ValueError("TOKEN_ENCRYPTION_KEY is required - token encryption is mandatory in production")
            logger.warning("TOKEN_ENCRYPTION_KEY not set - using insecure development secret")
            secret = DEV_SECRET

        self._secrets: List[str] = [secret] + [s for s in previous_secrets if s]
        self._primary = _fernet_for_secret(secret)
        self._multi = MultiFernet([self._primary] + [_fernet_for_secret(s) for s in self._secrets[1:]])

        if len(self._secrets) > 1:
            logger.info(f"Credential vault initialized with {len(self._secrets)} keys (1 primary + {len(self._secrets) - 1} old)")

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        return cls(
            settings.token_encryption_key,
            settings.old_encryption_keys,
            require_secret=settings.is_production,
        )

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt with the PRIMARY key.

        Empty strings and None are stored as-is.
        """
        if not plaintext:
            return plaintext
        return self._primary.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, blob: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value, falling back to returning it unchanged.

        Args:
            blob: Fernet token, legacy colon-delimited blob, or plaintext

        Returns:
            Plaintext (or the input itself when it cannot be decrypted)
        """
        if not blob:
            return blob

        if blob.startswith(FERNET_PREFIX):
            try:
                return self._multi.decrypt(blob.encode('utf-8')).decode('utf-8')
            except (InvalidToken, UnicodeDecodeError):
                logger.warning("Token failed authentication with all known keys - treating as plaintext")
                return blob

        parts = blob.split(':')
        if len(parts) == 4 and all(parts):
            plaintext = self._decrypt_legacy(parts)
            if plaintext is not None:
                return plaintext
            logger.warning("Legacy token blob could not be decrypted - treating as plaintext")

        return blob

    def _decrypt_legacy(self, parts: List[str]) -> Optional[str]:
        try:
            salt, iv, tag, data = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError):
            return None
        if not iv or not tag:
            return None

        for secret in self._secrets:
            try:
                key = _legacy_key(secret, salt)
                # AESGCM expects the tag appended to the ciphertext
                return AESGCM(key).decrypt(iv, data + tag, None).decode('utf-8')
            except (InvalidTag, ValueError, UnicodeDecodeError):
                continue
        return None

    def is_encrypted(self, blob: Optional[str]) -> bool:
        """True when the value is in the current (Fernet) format."""
        return bool(blob) and blob.startswith(FERNET_PREFIX)
