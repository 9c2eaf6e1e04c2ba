"""
Credential encryption for stored database passwords.

Current format (AES-256-GCM, 16-byte IV, 16-byte tag)::

    <iv hex>:<auth tag hex>:<ciphertext base64>

Legacy format (AES-256-CBC, PKCS#7, key derived with the fixed salt
``"salt"``) is still decrypted so old connection documents keep working::

    <iv hex>:<ciphertext base64>

Keys are derived once per vault with scrypt (N=2**14, r=8, p=1, 32 bytes),
after which the vault holds no mutable state and can be shared freely
between tasks.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.core.config import settings, DEFAULT_ENCRYPTION_KEY, DEFAULT_ENCRYPTION_SALT
from app.core.exceptions import (
    AuthTagMismatchError,
    EncryptionError,
    LegacyDecryptionError,
)
from app.core.logging_config import get_logger


logger = get_logger(__name__)

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32
LEGACY_SALT = b"salt"

_VERIFY_SAMPLE = "db-master-vault-self-test"


def derive_key(secret: str, salt: bytes) -> bytes:
    """Derive a 256-bit key with scrypt (N=16384, r=8, p=1)."""
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=2 ** 14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """
    Encrypts and decrypts connection passwords.

    Args:
        secret: Encryption secret (ENCRYPTION_KEY)
        salt: Key-derivation salt (ENCRYPTION_SALT)
    """

    def __init__(self, secret: str, salt: str):
        # unset (empty) values fall back to the shipped defaults
        secret = secret or DEFAULT_ENCRYPTION_KEY
        salt = salt or DEFAULT_ENCRYPTION_SALT

        if secret == DEFAULT_ENCRYPTION_KEY or salt == DEFAULT_ENCRYPTION_SALT:
            logger.warning(
                "encryption_default_secret_in_use",
                environment=settings.ENVIRONMENT,
                hint="set ENCRYPTION_KEY and ENCRYPTION_SALT",
            )

        self._aead = AESGCM(derive_key(secret, salt.encode("utf-8")))
        self._legacy_key = derive_key(secret, LEGACY_SALT)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret in the current GCM format.

        Every call draws a fresh random IV, so encrypting the same value
        twice yields different ciphertexts.

        Raises:
            EncryptionError: If plaintext is empty
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty text")

        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return ":".join([
            iv.hex(),
            tag.hex(),
            base64.b64encode(ciphertext).decode("ascii"),
        ])

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value in either the current or the legacy format.

        The number of ``:``-separated fields selects the path; a three-field
        value never falls back to the legacy path.

        Raises:
            AuthTagMismatchError: GCM authentication failed
            LegacyDecryptionError: Two-field value could not be decrypted
            EncryptionError: Empty or malformed input
        """
        if not ciphertext:
            raise EncryptionError("Cannot decrypt empty text")

        parts = ciphertext.split(":")
        if len(parts) == 3:
            return self._decrypt_gcm(*parts)
        if len(parts) == 2:
            return self._decrypt_legacy(*parts)
        raise EncryptionError(
            "Invalid encrypted text format",
            details={"fields": len(parts)},
        )

    def re_encrypt(self, ciphertext: str) -> str:
        """Decrypt a value in any supported format and encrypt it in the current one."""
        return self.encrypt(self.decrypt(ciphertext))

    def verify(self) -> bool:
        """Round-trip a synthetic value. Never raises."""
        try:
            return self.decrypt(self.encrypt(_VERIFY_SAMPLE)) == _VERIFY_SAMPLE
        except Exception as e:
            logger.error("encryption_self_test_failed", error=str(e))
            return False

    def _decrypt_gcm(self, iv_hex: str, tag_hex: str, data_b64: str) -> str:
        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            data = base64.b64decode(data_b64, validate=True)
        except (ValueError, binascii.Error) as e:
            raise EncryptionError(f"Failed to decrypt data: {e}") from e

        if len(tag) != AUTH_TAG_LENGTH or len(iv) < 8:
            raise EncryptionError("Failed to decrypt data: invalid IV or auth tag length")

        try:
            plaintext = self._aead.decrypt(iv, data + tag, None)
        except InvalidTag as e:
            raise AuthTagMismatchError(
                "Failed to decrypt data: unsupported state or unable to authenticate data"
            ) from e
        return self._to_text(plaintext)

    def _decrypt_legacy(self, iv_hex: str, data_b64: str) -> str:
        try:
            iv = bytes.fromhex(iv_hex)
            data = base64.b64decode(data_b64, validate=True)
            decryptor = Cipher(algorithms.AES(self._legacy_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError) as e:
            raise LegacyDecryptionError(
                f"Failed to decrypt data with legacy method: {e}"
            ) from e

    @staticmethod
    def _to_text(plaintext: bytes) -> str:
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncryptionError(f"Failed to decrypt data: {e}") from e


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Return the process-wide vault built from settings."""
    global _vault
    if _vault is None:
        _vault = CredentialVault(settings.ENCRYPTION_KEY, settings.ENCRYPTION_SALT)
    return _vault
