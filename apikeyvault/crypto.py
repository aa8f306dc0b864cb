"""
API Key Vault - Cryptography Module

Low-level primitives shared by the key file (keys.py) and the field
encryption utility (fields.py). Nothing here knows about records or
databases.

Security Architecture:
    1. Field key: 32 random bytes, identified by a short key id (kid)
    2. Each secret value → AES-256-GCM with a fresh nonce under the field key
    3. Key file: passphrase → scrypt → key-encryption key → wraps field keys
    4. Associated data binds every ciphertext to its context and kid
"""

import os
import json
import hashlib
import secrets
import string
from typing import Tuple

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


# =============================================================================
# Configuration
# =============================================================================

KEY_SIZE = 32            # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM
TAG_SIZE = 16            # 128-bit authentication tag
SALT_SIZE = 16
KID_LENGTH = 8           # hex chars

# scrypt parameters for the key file passphrase (~250ms on modern CPU)
SCRYPT_N = 2**17
SCRYPT_R = 8
SCRYPT_P = 1


# =============================================================================
# Key Derivation
# =============================================================================

def derive_wrapping_key(passphrase: str, salt: bytes,
                        n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P) -> bytes:
    """
    Derive the key-encryption key for the key file from a passphrase.

    Args:
        passphrase: User's key file passphrase
        salt: Random salt stored next to the wrapped keys (not secret)
        n, r, p: scrypt cost parameters (stored in the key file)

    Returns:
        32-byte key
    """
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=n, r=r, p=p)
    return kdf.derive(passphrase.encode('utf-8'))


def generate_key() -> bytes:
    """Generate a random 256-bit field key."""
    return os.urandom(KEY_SIZE)


def key_id(key: bytes) -> str:
    """
    Short public identifier of a key.

    Stored inside every ciphertext so decrypt() can pick the right key from
    the ring after a rotation. Reveals nothing usable about the key.
    """
    return hashlib.sha256(key).hexdigest()[:KID_LENGTH]


# =============================================================================
# Canonical Associated Data
# =============================================================================

def canonical_ad(ad: dict) -> bytes:
    """
    Convert associated data to canonical JSON bytes.

    Same dict always gives the same bytes: sorted keys, compact separators,
    UTF-8 without escaping.
    """
    json_str = json.dumps(ad, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return json_str.encode('utf-8')


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

def encrypt(key: bytes, plaintext: bytes, associated_data: dict) -> Tuple[bytes, bytes]:
    """
    Encrypt data with AES-256-GCM.

    Returns:
        (nonce, ciphertext) tuple; ciphertext includes the 16-byte tag
    """
    nonce = os.urandom(NONCE_SIZE)
    ad_bytes = canonical_ad(associated_data)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, ad_bytes)


def decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: dict) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Raises:
        cryptography.exceptions.InvalidTag: wrong key, tampered data or
        associated data that doesn't match encryption exactly
    """
    ad_bytes = canonical_ad(associated_data)
    return AESGCM(key).decrypt(nonce, ciphertext, ad_bytes)


# =============================================================================
# Password Generation
# =============================================================================

def generate_password(length: int = 20, use_symbols: bool = True) -> str:
    """
    Generate a strong random password with secrets.choice().

    Args:
        length: Password length (default 20)
        use_symbols: Include !@#$%^&*()_+-= ?
    """
    if length < 1:
        raise ValueError("Password length must be positive")

    chars = string.ascii_letters + string.digits
    if use_symbols:
        chars += "!@#$%^&*()_+-="
    return ''.join(secrets.choice(chars) for _ in range(length))
