"""
API Key Vault - Crypto, key management and recovery tests

Run with: pytest

Covers the field encryption contract (round trip, wrong key, tampering,
missing key), the passphrase-protected key file, key rotation, and
Shamir recovery of the field key.
"""

import os
import json
import base64
import logging

import pytest

from apikeyvault import crypto, fields
from apikeyvault.config import load_settings
from apikeyvault.errors import DecryptionError, EncryptionError, KeyFileError, RecoveryError
from apikeyvault.fields import FieldCipher
from apikeyvault.keys import (
    KeyRing, save_keyring, load_keyring, keyring_from_env, export_key, backup_key_file,
)
from apikeyvault.recovery import (
    generate_recovery_shares, combine_recovery_shares, recover_keyring, format_recovery_kit,
)

FAST_SCRYPT_N = 2**10


def test_round_trip():
    """decrypt(encrypt(s)) == s for a spread of strings."""
    cipher = FieldCipher(KeyRing.generate())
    for s in ["sk-test-123", "", "pässwörd ✓ 鍵", " spaces ", "x" * 5000, "a:b:c"]:
        assert cipher.decrypt(cipher.encrypt(s)) == s


def test_encrypt_uses_fresh_nonce():
    cipher = FieldCipher(KeyRing.generate())
    a = cipher.encrypt("same")
    b = cipher.encrypt("same")
    assert a != b
    assert cipher.decrypt(a) == cipher.decrypt(b) == "same"


def test_token_format():
    ring = KeyRing.generate()
    token = FieldCipher(ring).encrypt("sk-abc")
    prefix, kid, body = token.split(":")
    assert prefix == "akv1"
    assert kid == ring.primary_kid
    assert "sk-abc" not in token


def test_different_key_fails():
    """Ciphertext from another key never decrypts to something else."""
    token = FieldCipher(KeyRing.generate()).encrypt("sk-test-123")
    other_ring = KeyRing.generate()
    other = FieldCipher(other_ring)

    with pytest.raises(DecryptionError):
        other.decrypt(token)

    # Same bytes relabelled with the other ring's key id: authentication fails
    _, _, body = token.split(":")
    forged = f"akv1:{other_ring.primary_kid}:{body}"
    with pytest.raises(DecryptionError):
        other.decrypt(forged)


def test_tampered_ciphertext_fails():
    cipher = FieldCipher(KeyRing.generate())
    prefix, kid, body = cipher.encrypt("secret").split(":")
    blob = bytearray(base64.urlsafe_b64decode(body))
    blob[-1] ^= 1
    tampered = f"{prefix}:{kid}:{base64.urlsafe_b64encode(bytes(blob)).decode()}"
    with pytest.raises(DecryptionError):
        cipher.decrypt(tampered)


@pytest.mark.parametrize("token", [
    "garbage",
    "",
    "akv2:abcdef12:AAAA",
    "akv1:abc:AAAA",
    "akv1:abcdef12:!!!",
    "akv1:abcdef12:AAAA",
    "akv1:abcdef12:AAAA:extra",
])
def test_malformed_ciphertext(token):
    with pytest.raises(DecryptionError):
        FieldCipher(KeyRing.generate()).decrypt(token)


def test_non_string_ciphertext():
    with pytest.raises(DecryptionError):
        FieldCipher(KeyRing.generate()).decrypt(b"akv1:...")


def test_encrypt_without_key():
    with pytest.raises(EncryptionError):
        FieldCipher().encrypt("sk-abc")


def test_encrypt_rejects_unencodable_input():
    cipher = FieldCipher(KeyRing.generate())
    with pytest.raises(EncryptionError):
        cipher.encrypt("\ud800")
    with pytest.raises(EncryptionError):
        cipher.encrypt(12345)


def test_process_wide_cipher():
    ring = KeyRing.generate()
    fields.install_keyring(ring)
    try:
        token = fields.encrypt("sk-global")
        assert fields.decrypt(token) == "sk-global"
        assert fields.default_cipher().keyring is ring
    finally:
        fields.clear_keyring()
    with pytest.raises(EncryptionError):
        fields.encrypt("sk-global")


def test_rotation_keeps_old_values_readable():
    ring = KeyRing.generate()
    cipher = FieldCipher(ring)
    old_kid = ring.primary_kid
    old_token = cipher.encrypt("before")

    new_kid = ring.rotate()
    assert new_kid != old_kid
    assert ring.primary_kid == new_kid
    assert cipher.key_id_of(cipher.encrypt("after")) == new_kid
    assert cipher.decrypt(old_token) == "before"

    ring.drop(old_kid)
    with pytest.raises(DecryptionError):
        cipher.decrypt(old_token)


def test_keyring_rules():
    ring = KeyRing.generate()
    with pytest.raises(EncryptionError):
        ring.add(b"short")
    with pytest.raises(EncryptionError):
        ring.drop(ring.primary_kid)
    with pytest.raises(EncryptionError):
        KeyRing().primary


def test_key_file_round_trip(tmp_path):
    path = str(tmp_path / "keys" / "field.key")
    ring = KeyRing.generate()
    ring.rotate()
    save_keyring(path, ring, "correct horse", n=FAST_SCRYPT_N)

    loaded = load_keyring(path, "correct horse")
    assert loaded.primary_kid == ring.primary_kid
    assert sorted(loaded.kids()) == sorted(ring.kids())
    assert loaded.primary == ring.primary

    with open(path) as f:
        text = f.read()
    assert export_key(ring.primary) not in text

    if os.name == "posix":
        assert os.stat(path).st_mode & 0o777 == 0o600


def test_key_file_wrong_passphrase(tmp_path):
    path = str(tmp_path / "field.key")
    save_keyring(path, KeyRing.generate(), "correct horse", n=FAST_SCRYPT_N)
    with pytest.raises(KeyFileError):
        load_keyring(path, "wrong horse")


def test_key_file_missing_or_corrupt(tmp_path):
    with pytest.raises(KeyFileError):
        load_keyring(str(tmp_path / "nope.key"), "pw")

    path = tmp_path / "bad.key"
    path.write_text("{not json")
    with pytest.raises(KeyFileError):
        load_keyring(str(path), "pw")

    with pytest.raises(KeyFileError):
        save_keyring(str(tmp_path / "x.key"), KeyRing.generate(), "")

    # Valid JSON of the wrong shape
    good = tmp_path / "good.key"
    save_keyring(str(good), KeyRing.generate(), "pw", n=FAST_SCRYPT_N)
    doc = json.loads(good.read_text())
    doc["primary"] = ["x"]
    for content in ["[]", '"x"', "null", json.dumps(doc)]:
        path.write_text(content)
        with pytest.raises(KeyFileError):
            load_keyring(str(path), "pw")


def test_backup_key_file(tmp_path):
    path = str(tmp_path / "field.key")
    assert backup_key_file(path) is None

    ring = KeyRing.generate()
    save_keyring(path, ring, "pw", n=FAST_SCRYPT_N)
    backup = backup_key_file(path)
    assert backup == path + ".bak"
    assert load_keyring(backup, "pw").primary == ring.primary
    if os.name == "posix":
        assert os.stat(backup).st_mode & 0o777 == 0o600


def test_keyring_from_env():
    k1, k2 = crypto.generate_key(), crypto.generate_key()
    ring = keyring_from_env(f"{export_key(k1)}, {export_key(k2)}")
    assert ring.primary == k1
    assert len(ring) == 2

    with pytest.raises(EncryptionError):
        keyring_from_env("not-base64!!")
    with pytest.raises(EncryptionError):
        keyring_from_env(" , ")
    with pytest.raises(EncryptionError):
        keyring_from_env(base64.b64encode(b"too short").decode())


def test_recovery_any_k_shares():
    key = crypto.generate_key()
    shares = generate_recovery_shares(key, k=3, n=5)
    assert len(shares) == 5

    assert combine_recovery_shares([shares[0], shares[2], shares[4]]) == key
    assert combine_recovery_shares([shares[1], shares[3], shares[4]]) == key
    assert recover_keyring(shares[:3]).primary_kid == crypto.key_id(key)


def test_recovery_insufficient_shares():
    shares = generate_recovery_shares(crypto.generate_key(), k=3, n=5)
    with pytest.raises(RecoveryError):
        combine_recovery_shares([shares[0], shares[1]])
    with pytest.raises(RecoveryError):
        combine_recovery_shares([shares[0]])


def test_recovery_parameter_checks():
    key = crypto.generate_key()
    with pytest.raises(ValueError):
        generate_recovery_shares(key, k=4, n=3)
    with pytest.raises(ValueError):
        generate_recovery_shares(key, k=1, n=3)
    with pytest.raises(ValueError):
        generate_recovery_shares(key, k=2, n=17)


def test_recovery_kit_text():
    ring = KeyRing.generate()
    shares = generate_recovery_shares(ring.primary, k=2, n=3)
    kit = format_recovery_kit(shares, ring.primary_kid, 2)
    assert ring.primary_kid in kit
    assert "Need 2 of 3 shares" in kit
    for share in shares:
        assert share in kit


def test_password_generation():
    pwd = crypto.generate_password(length=20, use_symbols=True)
    assert len(pwd) == 20
    plain = crypto.generate_password(length=16, use_symbols=False)
    assert len(plain) == 16 and plain.isalnum()
    with pytest.raises(ValueError):
        crypto.generate_password(length=0)


def test_load_settings_from_environment():
    settings = load_settings({
        "APIKEYVAULT_DB": "/tmp/v.db",
        "APIKEYVAULT_KEY_FILE": "/tmp/f.key",
        "APIKEYVAULT_USER": "alice",
        "APIKEYVAULT_LOG_LEVEL": "debug",
    })
    assert settings.db_path == "/tmp/v.db"
    assert settings.key_file == "/tmp/f.key"
    assert settings.owner_id == "alice"
    assert settings.field_key is None
    assert settings.log_level == logging.DEBUG

    settings = load_settings({"APIKEYVAULT_USER": "bob", "APIKEYVAULT_LOG_LEVEL": "nonsense"})
    assert settings.db_path.endswith(os.path.join(".apikeyvault", "vault.db"))
    assert settings.log_level == logging.WARNING
