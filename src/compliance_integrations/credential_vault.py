"""
Symmetric encryption of integration credentials at rest.

SECURITY REQUIREMENT: configuration blobs (tokens, API keys) are NEVER
persisted in plaintext.

The Fernet key is derived with HKDF-SHA256 from the process-wide master key
(ENCRYPTION_KEY). Fernet uses a random IV per call, so encrypting the same
plaintext twice yields different ciphertext and no pattern leaks across
integrations that share a secret.

Production mode: a missing master key is a fatal startup error.
Development mode: an ephemeral key is generated (data does not survive a
restart).

Usage:
    vault = CredentialVault.from_settings(settings)

    blob = vault.encrypt_config({"access_token": "gho_xxx"})
    creds = vault.decrypt_config(blob)
    creds.get("access_token")
"""

import base64
import hashlib
import json
import logging
import secrets
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import IntegrationSettings
from .exceptions import CorruptCredential, CredentialVaultError, VaultKeyMissing
from .secure_credentials import SecureCredentials

logger = logging.getLogger(__name__)


# Configuration
KEY_LENGTH = 32  # 256 bits
HKDF_SALT = b"compliance-integrations:vault:salt:v1"
HKDF_INFO = b"compliance-integrations:v1:credentials:encrypt"


def derive_fernet_key(master_key: str) -> bytes:
    """
    Derive a Fernet key from a master key string using HKDF.

    Args:
        master_key: Master key material from configuration

    Returns:
        URL-safe base64-encoded 32-byte key suitable for Fernet
    """
    if not master_key:
        raise CredentialVaultError("Master key must not be empty")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=HKDF_SALT,
        info=HKDF_INFO,
    )
    derived_key = hkdf.derive(master_key.encode("utf-8"))
    return base64.urlsafe_b64encode(derived_key)


class CredentialVault:
    """
    Process-wide credential encryption.

    The current key encrypts; the current and any previous keys decrypt,
    which allows master key rotation without downtime.
    """

    def __init__(self, master_key: str, previous_keys: Optional[List[str]] = None):
        """
        Initialize the credential vault.

        Args:
            master_key: Current master key
            previous_keys: Retired master keys still accepted for decryption
        """
        self._current_key = derive_fernet_key(master_key)
        keys = [self._current_key] + [derive_fernet_key(k) for k in previous_keys or []]
        self._fernet = MultiFernet([Fernet(k) for k in keys])
        logger.info(
            f"CredentialVault initialized: fingerprint={self.key_fingerprint()} "
            f"previous_keys={len(keys) - 1}"
        )

    @classmethod
    def from_settings(cls, settings: IntegrationSettings) -> "CredentialVault":
        """
        Build the vault from process configuration.

        Raises:
            VaultKeyMissing: No key configured in production
        """
        if settings.encryption_key:
            return cls(settings.encryption_key, settings.previous_encryption_keys)

        if settings.is_production:
            raise VaultKeyMissing(
                "ENCRYPTION_KEY must be set when ENVIRONMENT=production"
            )

        logger.warning(
            "ENCRYPTION_KEY not set; using an ephemeral key. "
            f"Encrypted credentials will not survive a restart (environment={settings.environment})"
        )
        return cls(secrets.token_urlsafe(KEY_LENGTH))

    # ------------------------------------------------------------------
    # Raw bytes
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt bytes with a fresh random IV.

        Args:
            plaintext: Data to encrypt (may be empty)

        Returns:
            Fernet token bytes
        """
        if not isinstance(plaintext, (bytes, bytearray)):
            raise CredentialVaultError(
                f"encrypt() expects bytes, got {type(plaintext).__name__}"
            )
        return self._fernet.encrypt(bytes(plaintext))

    def decrypt(self, ciphertext: Union[bytes, str]) -> bytes:
        """
        Decrypt a token produced by encrypt().

        Raises:
            CorruptCredential: Malformed ciphertext or key mismatch
        """
        try:
            return self._fernet.decrypt(ciphertext)
        except InvalidToken:
            logger.error(
                "Decryption failed (invalid token - key mismatch or corrupted data)"
            )
            raise CorruptCredential(
                "Invalid token - credentials are corrupted or the key changed"
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Decryption failed: {type(e).__name__}")
            raise CorruptCredential(f"Malformed ciphertext: {type(e).__name__}") from e

    # ------------------------------------------------------------------
    # JSON configuration blobs
    # ------------------------------------------------------------------

    def encrypt_config(self, config: Union[Dict[str, Any], SecureCredentials]) -> bytes:
        """Encrypt an integration configuration mapping."""
        if isinstance(config, SecureCredentials):
            json_data = config.to_json()
        else:
            json_data = json.dumps(config, sort_keys=True, default=str)
        return self.encrypt(json_data.encode("utf-8"))

    def decrypt_config(self, ciphertext: Union[bytes, str]) -> SecureCredentials:
        """
        Decrypt an integration configuration blob.

        Raises:
            CorruptCredential: Undecryptable or not a JSON object
        """
        raw = self.decrypt(ciphertext)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptCredential("Decrypted configuration is not valid JSON") from e
        if not isinstance(data, dict):
            raise CorruptCredential("Decrypted configuration is not a JSON object")
        return SecureCredentials(**data)

    # ------------------------------------------------------------------
    # Key management
    # ------------------------------------------------------------------

    def rotate(self, ciphertext: Union[bytes, str]) -> bytes:
        """
        Re-encrypt a token under the current key.

        Call after moving the old master key into PREVIOUS_ENCRYPTION_KEYS.
        """
        try:
            return self._fernet.rotate(ciphertext)
        except InvalidToken:
            raise CorruptCredential("Cannot rotate: credentials are corrupted or the key changed")

    def key_fingerprint(self) -> str:
        """Safe fingerprint of the current key for logs and diagnostics."""
        return hashlib.sha256(self._current_key).hexdigest()[:16]
