"""
API Key Vault - Key Management

Where the field key comes from, how it is stored, and how it is rotated.

Key provenance:
- Field keys are 32 random bytes (never derived from a password), so a
  weak passphrase only weakens the key file, not every stored secret.
- On disk, each field key is wrapped with AES-256-GCM under a key derived
  from the user's passphrase with scrypt. The file is created 0600.
- For scripted use, APIKEYVAULT_FIELD_KEY can carry base64 keys instead.

Rotation:
- KeyRing.rotate() adds a new primary key. Old keys stay in the ring so
  existing ciphertext keeps decrypting; CredentialManager.reencrypt_all()
  moves every stored secret to the new primary.

Key file format (JSON):
    {
      "version": 1,
      "kdf": "scrypt",
      "kdf_params": {"N": 131072, "r": 8, "p": 1},
      "salt": "<base64>",
      "primary": "<kid>",
      "keys": [{"kid": "<kid>", "nonce": "<base64>", "wrapped": "<base64>"}]
    }
"""

import os
import json
import base64
import binascii
import logging
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag

from . import crypto
from .errors import EncryptionError, KeyFileError

logger = logging.getLogger(__name__)

KEY_FILE_VERSION = 1


# =============================================================================
# KEY RING
# =============================================================================

class KeyRing:
    """
    Set of field keys indexed by key id, with exactly one primary.

    The primary key encrypts new values; any key in the ring can decrypt.
    """

    def __init__(self, keys: Optional[List[bytes]] = None, primary_kid: Optional[str] = None):
        self._keys: Dict[str, bytes] = {}
        self.primary_kid: Optional[str] = None
        for key in keys or []:
            self.add(key)
        if primary_kid is not None:
            if primary_kid not in self._keys:
                raise EncryptionError(f"Primary key {primary_kid} is not in the ring")
            self.primary_kid = primary_kid

    @classmethod
    def generate(cls) -> "KeyRing":
        """Create a ring holding one fresh random key."""
        return cls([crypto.generate_key()])

    def add(self, key: bytes, primary: bool = False) -> str:
        """
        Add a key to the ring.

        The first key added becomes primary automatically.

        Returns:
            kid of the added key
        """
        if len(key) != crypto.KEY_SIZE:
            raise EncryptionError(f"Field key must be {crypto.KEY_SIZE} bytes, got {len(key)}")
        kid = crypto.key_id(key)
        self._keys[kid] = key
        if primary or self.primary_kid is None:
            self.primary_kid = kid
        return kid

    def rotate(self) -> str:
        """Add a new random key and make it primary. Returns the new kid."""
        kid = self.add(crypto.generate_key(), primary=True)
        logger.info(f"Rotated field key, new primary {kid}")
        return kid

    def drop(self, kid: str) -> None:
        """Remove a retired key. The primary can't be dropped."""
        if kid == self.primary_kid:
            raise EncryptionError("Cannot drop the primary key")
        self._keys.pop(kid, None)

    def get(self, kid: str) -> Optional[bytes]:
        return self._keys.get(kid)

    @property
    def primary(self) -> bytes:
        if self.primary_kid is None:
            raise EncryptionError("Key ring is empty")
        return self._keys[self.primary_kid]

    def kids(self) -> List[str]:
        return list(self._keys)

    def __contains__(self, kid: str) -> bool:
        return kid in self._keys

    def __len__(self) -> int:
        return len(self._keys)


# =============================================================================
# KEY FILE
# =============================================================================

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _wrap_ad(kid: str) -> dict:
    return {"ctx": "field_key_wrap", "aead": "aes256gcm", "kid": kid}


def save_keyring(path: str, ring: KeyRing, passphrase: str,
                 n: int = crypto.SCRYPT_N, r: int = crypto.SCRYPT_R, p: int = crypto.SCRYPT_P) -> None:
    """
    Write the ring to a passphrase-protected key file.

    A fresh salt is generated on every save. The file is written to a
    temporary name with mode 0600 and then moved into place.
    """
    if not passphrase:
        raise KeyFileError("Passphrase is required")

    salt = os.urandom(crypto.SALT_SIZE)
    wrapping_key = crypto.derive_wrapping_key(passphrase, salt, n, r, p)

    entries = []
    for kid in ring.kids():
        nonce, wrapped = crypto.encrypt(wrapping_key, ring.get(kid), _wrap_ad(kid))
        entries.append({"kid": kid, "nonce": _b64(nonce), "wrapped": _b64(wrapped)})

    doc = {
        "version": KEY_FILE_VERSION,
        "kdf": "scrypt",
        "kdf_params": {"N": n, "r": r, "p": p},
        "salt": _b64(salt),
        "primary": ring.primary_kid,
        "keys": entries,
    }

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    tmp_path = path + ".tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(doc, f, indent=2)
    os.replace(tmp_path, path)
    logger.info(f"Saved key file {path} ({len(entries)} key(s))")


def load_keyring(path: str, passphrase: str) -> KeyRing:
    """
    Read and unwrap a key file.

    Raises:
        KeyFileError: file missing or malformed, or wrong passphrase
    """
    if not os.path.exists(path):
        raise KeyFileError(f"Key file not found: {path}")

    try:
        with open(path, 'r') as f:
            doc = json.load(f)
        if not isinstance(doc, dict):
            raise KeyFileError(f"Key file {path} does not hold a JSON object")
        if doc.get("version") != KEY_FILE_VERSION or doc.get("kdf") != "scrypt":
            raise KeyFileError(f"Unsupported key file format in {path}")
        params = doc["kdf_params"]
        salt = base64.b64decode(doc["salt"])
        entries = doc["keys"]
        primary_kid = doc["primary"]
    except (OSError, ValueError, KeyError, TypeError, binascii.Error) as e:
        raise KeyFileError(f"Corrupt key file {path}: {e}") from e
    if not isinstance(primary_kid, str) or not isinstance(entries, list) or not isinstance(params, dict):
        raise KeyFileError(f"Corrupt key file {path}: unexpected field types")

    try:
        wrapping_key = crypto.derive_wrapping_key(passphrase, salt, params["N"], params["r"], params["p"])
    except (KeyError, TypeError, ValueError) as e:
        raise KeyFileError(f"Bad scrypt parameters in {path}: {e}") from e

    ring = KeyRing()
    for entry in entries:
        try:
            key = crypto.decrypt(
                wrapping_key,
                base64.b64decode(entry["nonce"]),
                base64.b64decode(entry["wrapped"]),
                _wrap_ad(entry["kid"]),
            )
        except InvalidTag:
            raise KeyFileError("Wrong passphrase or tampered key file") from None
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise KeyFileError(f"Corrupt key entry in {path}: {e}") from e
        if ring.add(key) != entry["kid"]:
            raise KeyFileError(f"Key id mismatch for {entry['kid']}")

    if primary_kid not in ring:
        raise KeyFileError(f"Primary key {primary_kid} missing from {path}")
    ring.primary_kid = primary_kid
    return ring


def backup_key_file(path: str) -> Optional[str]:
    """
    Copy an existing key file to <path>.bak (mode 0600) before it is replaced.

    Returns:
        Backup path, or None if there was no file to back up
    """
    if not os.path.exists(path):
        return None
    backup_path = path + ".bak"
    with open(path, 'rb') as src:
        data = src.read()
    fd = os.open(backup_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as dst:
        dst.write(data)
    logger.info(f"Backed up key file {path} to {backup_path}")
    return backup_path


def keyring_from_env(value: str) -> KeyRing:
    """
    Build a ring from a comma-separated list of base64 keys.

    The first key is primary; the rest are kept for decrypting old values.
    """
    ring = KeyRing()
    for i, part in enumerate(p.strip() for p in value.split(",")):
        if not part:
            continue
        try:
            key = base64.b64decode(part, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Invalid base64 field key #{i + 1}") from e
        ring.add(key, primary=(i == 0))
    if not len(ring):
        raise EncryptionError("No field keys in environment value")
    return ring


def export_key(key: bytes) -> str:
    """Base64 form accepted by keyring_from_env()."""
    return _b64(key)
