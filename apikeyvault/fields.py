"""
API Key Vault - Field Encryption

Turns one secret string (API key, password) into a ciphertext string that
is safe to store, and back.

Token format:
    akv1:<kid>:<base64url(nonce || ciphertext || tag)>

- akv1: format version
- kid:  which key of the ring encrypted the value
- body: AES-256-GCM output, associated data binds format version and kid

encrypt() is not deterministic: every call uses a fresh nonce, so the same
plaintext gives a different token each time. decrypt() never returns wrong
plaintext; anything that fails authentication raises DecryptionError.

Module-level encrypt()/decrypt() use the process-wide key ring installed by
install_keyring(). FieldCipher does the same work with an explicit ring.
"""

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidTag

from . import crypto
from .errors import EncryptionError, DecryptionError
from .keys import KeyRing

TOKEN_PREFIX = "akv1"
AEAD_ALGO = "aes256gcm"


def _field_ad(kid: str) -> dict:
    return {"ctx": "field", "aead": AEAD_ALGO, "fmt": TOKEN_PREFIX, "kid": kid}


class FieldCipher:
    """Encrypt/decrypt individual secret strings with a key ring."""

    def __init__(self, keyring: Optional[KeyRing] = None):
        self.keyring = keyring

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret string.

        Raises:
            EncryptionError: no key ring loaded, or plaintext is not a str
                             that can be encoded as UTF-8
        """
        if self.keyring is None or self.keyring.primary_kid is None:
            raise EncryptionError("No field key loaded")
        if not isinstance(plaintext, str):
            raise EncryptionError(f"Plaintext must be str, got {type(plaintext).__name__}")
        try:
            data = plaintext.encode('utf-8')
        except UnicodeEncodeError as e:
            raise EncryptionError(f"Plaintext cannot be encoded: {e.reason}") from e

        kid = self.keyring.primary_kid
        nonce, ciphertext = crypto.encrypt(self.keyring.primary, data, _field_ad(kid))
        body = base64.urlsafe_b64encode(nonce + ciphertext).decode('ascii')
        return f"{TOKEN_PREFIX}:{kid}:{body}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            DecryptionError: malformed token, unknown key id, or the value
                             was produced with a different key / tampered
        """
        kid, blob = self._parse(ciphertext)

        key = self.keyring.get(kid) if self.keyring is not None else None
        if key is None:
            raise DecryptionError(f"Ciphertext was encrypted with unknown key {kid}")

        nonce, body = blob[:crypto.NONCE_SIZE], blob[crypto.NONCE_SIZE:]
        try:
            data = crypto.decrypt(key, nonce, body, _field_ad(kid))
        except InvalidTag:
            raise DecryptionError("Ciphertext failed authentication (wrong key or tampered)") from None

        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8") from e

    def key_id_of(self, ciphertext: str) -> str:
        """Key id embedded in a token (no decryption)."""
        return self._parse(ciphertext)[0]

    @staticmethod
    def _parse(ciphertext: str):
        if not isinstance(ciphertext, str):
            raise DecryptionError("Ciphertext must be a string")
        parts = ciphertext.split(":")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise DecryptionError("Malformed ciphertext")
        _, kid, body = parts
        if len(kid) != crypto.KID_LENGTH:
            raise DecryptionError("Malformed key id")
        try:
            blob = base64.urlsafe_b64decode(body.encode('ascii'))
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise DecryptionError("Malformed ciphertext encoding") from e
        if len(blob) < crypto.NONCE_SIZE + crypto.TAG_SIZE:
            raise DecryptionError("Ciphertext too short")
        return kid, blob


# =============================================================================
# Process-wide cipher
# =============================================================================

_default_cipher = FieldCipher()


def install_keyring(keyring: KeyRing) -> FieldCipher:
    """Make `keyring` the process-wide field key ring."""
    _default_cipher.keyring = keyring
    return _default_cipher


def clear_keyring() -> None:
    """Forget the process-wide key ring (encrypt() fails until reinstalled)."""
    _default_cipher.keyring = None


def default_cipher() -> FieldCipher:
    return _default_cipher


def encrypt(plaintext: str) -> str:
    """Encrypt with the process-wide key ring."""
    return _default_cipher.encrypt(plaintext)


def decrypt(ciphertext: str) -> str:
    """Decrypt with the process-wide key ring."""
    return _default_cipher.decrypt(ciphertext)
