"""
API Key Vault - Storage and credential manager tests

Run with: pytest

Covers owner-scoped persistence (row-level security emulation, schema
checks, error mapping) and the credential operations built on top of it.
"""

import json
import sqlite3
from datetime import date

import pytest

from apikeyvault.config import Settings
from apikeyvault.errors import EncryptionError, PersistenceError, RecordNotFound
from apikeyvault.fields import FieldCipher
from apikeyvault.keys import KeyRing, save_keyring
from apikeyvault.reveal import RevealState
from apikeyvault.store import SQLiteStore
from apikeyvault.vault import CredentialManager, group_by_service, export_filename


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "vault.db")


@pytest.fixture
def store(db_path):
    s = SQLiteStore(db_path, owner_id="alice")
    yield s
    s.close()


@pytest.fixture
def manager(store):
    return CredentialManager(store, FieldCipher(KeyRing.generate()))


def _row(**overrides):
    row = {"service_name": "OpenAI", "encrypted_api_key": "akv1:deadbeef:AAAA"}
    row.update(overrides)
    return row


# =============================================================================
# STORE
# =============================================================================

def test_insert_assigns_server_fields(store):
    [row] = store.insert("api_keys", [_row(tags=["prod", "ml"])])
    assert row["id"]
    assert row["user_id"] == "alice"
    assert row["created_at"] and row["updated_at"]
    assert row["tags"] == ["prod", "ml"]
    assert row["encrypted_password"] == ""
    assert row["notes"] == ""


def test_rows_are_owner_scoped(db_path, store):
    [row] = store.insert("api_keys", [_row()])
    with SQLiteStore(db_path, owner_id="bob") as bob:
        assert bob.select("api_keys") == []
        assert bob.select("api_keys", {"id": row["id"]}) == []
        with pytest.raises(RecordNotFound):
            bob.update("api_keys", row["id"], {"notes": "mine now"})
        with pytest.raises(RecordNotFound):
            bob.delete("api_keys", row["id"])
        with pytest.raises(PersistenceError):
            bob.insert("api_keys", [_row(user_id="alice")])
    assert len(store.select("api_keys")) == 1


def test_select_filter_and_order(store):
    store.insert("api_keys", [
        _row(service_name="Zeta", notes="z1"),
        _row(service_name="Alpha", notes="a1"),
        _row(service_name="Alpha", notes="a2"),
    ])
    rows = store.select("api_keys", order=[("service_name", True), ("created_at", False)])
    assert [r["notes"] for r in rows] == ["a2", "a1", "z1"]

    alpha = store.select("api_keys", {"service_name": "Alpha"}, order=[("created_at", False)])
    assert [r["notes"] for r in alpha] == ["a2", "a1"]


def test_update_and_delete(store):
    [row] = store.insert("api_keys", [_row()])
    updated = store.update("api_keys", row["id"], {"notes": "rotated", "tags": ["x"]})
    assert updated["notes"] == "rotated"
    assert updated["tags"] == ["x"]
    assert updated["updated_at"] >= row["updated_at"]
    assert updated["created_at"] == row["created_at"]

    assert store.update("api_keys", row["id"], {}) == updated

    store.delete("api_keys", row["id"])
    assert store.select("api_keys") == []
    with pytest.raises(RecordNotFound):
        store.delete("api_keys", row["id"])


def test_schema_is_enforced(store):
    with pytest.raises(PersistenceError):
        store.select("users")
    with pytest.raises(PersistenceError):
        store.select("api_keys", {"password": "x"})
    with pytest.raises(PersistenceError):
        store.select("api_keys", order=[("1; DROP TABLE api_keys", True)])
    with pytest.raises(PersistenceError):
        store.insert("api_keys", [_row(created_at="2020-01-01")])
    [row] = store.insert("api_keys", [_row()])
    with pytest.raises(PersistenceError):
        store.update("api_keys", row["id"], {"user_id": "bob"})


def test_sqlite_errors_become_persistence_errors(store):
    # encrypted_api_key is NOT NULL
    with pytest.raises(PersistenceError) as exc:
        store.insert("api_keys", [{"service_name": "OpenAI"}])
    assert exc.value.retryable is False


def test_locked_database_is_retryable(db_path):
    with SQLiteStore(db_path, owner_id="alice", timeout=0) as store:
        other = sqlite3.connect(db_path, timeout=0, isolation_level=None)
        try:
            other.execute("BEGIN EXCLUSIVE")
            with pytest.raises(PersistenceError) as exc:
                store.insert("api_keys", [_row()])
            assert exc.value.retryable is True
            other.execute("ROLLBACK")
        finally:
            other.close()
        assert len(store.insert("api_keys", [_row()])) == 1


def test_closed_store(db_path):
    s = SQLiteStore(db_path, owner_id="alice")
    s.close()
    with pytest.raises(PersistenceError):
        s.select("api_keys")


def test_owner_required(db_path):
    with pytest.raises(PersistenceError):
        SQLiteStore(db_path, owner_id="")


# =============================================================================
# CREDENTIAL MANAGER
# =============================================================================

def test_add_without_password_scenario(manager, db_path):
    """service=OpenAI, api_key=sk-abc, no password: ciphertext key, empty password, masked display."""
    record = manager.add_credential("OpenAI", api_key="sk-abc")
    assert record.encrypted_api_key
    assert "sk-abc" not in record.encrypted_api_key
    assert record.encrypted_password == ""
    assert manager.cipher.decrypt(record.encrypted_api_key) == "sk-abc"

    reveal = RevealState(manager.cipher, clipboard=lambda text: None)
    shown = reveal.display(record, "api_key")
    assert shown != "sk-abc" and "sk-abc" not in shown
    assert reveal.display(record, "password") == "-"


def test_plaintext_never_reaches_the_database(manager, db_path):
    manager.add_credential("GitHub", api_key="ghp_SECRET", password="hunter2",
                           email_username="me@example.com", notes="work")
    conn = sqlite3.connect(db_path)
    try:
        dump = "\n".join(conn.iterdump())
    finally:
        conn.close()
    assert "ghp_SECRET" not in dump
    assert "hunter2" not in dump
    assert "me@example.com" in dump


def test_add_validates_input(manager):
    with pytest.raises(ValueError):
        manager.add_credential("OpenAI", api_key="   ")
    with pytest.raises(ValueError):
        manager.add_credential("  ", api_key="sk-abc")


def test_mass_add_skips_rows_without_key(manager):
    added = manager.mass_add("Anthropic", [
        {"api_key": "sk-1", "email_username": "a@x.io"},
        {"api_key": "  ", "email_username": "skipped@x.io"},
        {"api_key": "sk-2", "password": "pw", "notes": "second"},
    ])
    assert len(added) == 2
    assert [r.email_username for r in added] == ["a@x.io", ""]
    assert added[1].encrypted_password
    assert added[0].encrypted_password == ""
    assert all(r.service_name == "Anthropic" for r in added)

    with pytest.raises(ValueError, match="At least one row must have an API key"):
        manager.mass_add("Anthropic", [{"api_key": ""}, {"email_username": "x"}])


def test_mass_add_stores_nothing_when_encryption_fails(store):
    manager = CredentialManager(store, FieldCipher())
    with pytest.raises(EncryptionError):
        manager.mass_add("OpenAI", [{"api_key": "sk-1"}, {"api_key": "sk-2"}])
    assert store.select("api_keys") == []


def test_list_orders_by_service_then_newest(manager):
    manager.add_credential("OpenAI", api_key="k1", notes="old")
    manager.add_credential("Anthropic", api_key="k2")
    manager.add_credential("OpenAI", api_key="k3", notes="new")

    records = manager.list_credentials()
    assert [r.service_name for r in records] == ["Anthropic", "OpenAI", "OpenAI"]
    assert [r.notes for r in manager.list_service("OpenAI")] == ["new", "old"]
    assert manager.services() == ["Anthropic", "OpenAI"]

    groups = group_by_service(records)
    assert list(groups) == ["Anthropic", "OpenAI"]
    assert len(groups["OpenAI"]) == 2


def test_edit_reencrypts_only_changed_secrets(manager):
    record = manager.add_credential("OpenAI", api_key="sk-old", password="pw-old", tags=["a"])

    edited = manager.edit_credential(record.id, notes="note", tags=["b", "b", " c "])
    assert edited.encrypted_api_key == record.encrypted_api_key
    assert edited.encrypted_password == record.encrypted_password
    assert edited.notes == "note"
    assert edited.tags == ["b", "c"]

    edited = manager.edit_credential(record.id, api_key="sk-new", password="")
    assert edited.encrypted_api_key != record.encrypted_api_key
    assert manager.cipher.decrypt(edited.encrypted_api_key) == "sk-new"
    assert edited.encrypted_password == ""

    with pytest.raises(ValueError):
        manager.edit_credential(record.id, api_key="")
    with pytest.raises(RecordNotFound):
        manager.edit_credential("missing-id", notes="x")


def test_delete_removes_from_list(manager):
    keep = manager.add_credential("OpenAI", api_key="k1")
    gone = manager.add_credential("OpenAI", api_key="k2")
    manager.delete_credential(gone.id)

    assert [r.id for r in manager.list_credentials()] == [keep.id]
    assert manager.get_credential(gone.id) is None
    with pytest.raises(RecordNotFound):
        manager.delete_credential(gone.id)


def test_export_service(manager):
    manager.add_credential("Open AI", api_key="sk-x", email_username="me", tags=["t"])
    manager.add_credential("Other", api_key="sk-y")

    data = json.loads(manager.export_service("Open AI"))
    assert len(data) == 1
    entry = data[0]
    assert set(entry) == {
        "service_name", "email_username", "encrypted_password", "encrypted_api_key",
        "notes", "tags", "created_at", "updated_at",
    }
    assert entry["email_username"] == "me"
    assert entry["tags"] == ["t"]
    assert "sk-x" not in json.dumps(data)

    assert export_filename("Open  AI", date(2025, 10, 10)) == "open-ai-keys-2025-10-10.json"


def test_reencrypt_all_after_rotation(manager):
    a = manager.add_credential("OpenAI", api_key="sk-a", password="pw-a")
    manager.add_credential("OpenAI", api_key="sk-b")

    new_kid = manager.cipher.keyring.rotate()
    assert manager.reencrypt_all() == 2
    assert manager.reencrypt_all() == 0

    for record in manager.list_credentials():
        assert manager.cipher.key_id_of(record.encrypted_api_key) == new_kid
    refreshed = manager.get_credential(a.id)
    assert manager.cipher.decrypt(refreshed.encrypted_api_key) == "sk-a"
    assert manager.cipher.decrypt(refreshed.encrypted_password) == "pw-a"


# =============================================================================
# MENU
# =============================================================================

def test_rotate_keeps_old_primary_when_key_file_save_fails(tmp_path, monkeypatch):
    import akv_main

    key_file = str(tmp_path / "field.key")
    ring = KeyRing.generate()
    old_kid = ring.primary_kid
    save_keyring(key_file, ring, "passphrase", n=2**10)

    session = akv_main.Session(Settings(db_path=str(tmp_path / "vault.db"),
                                        key_file=key_file, owner_id="alice"))
    session.open(ring)
    monkeypatch.setattr(akv_main, "clear_screen", lambda: None)
    monkeypatch.setattr(akv_main, "pause", lambda: None)
    monkeypatch.setattr(akv_main.getpass, "getpass", lambda prompt="": "passphrase")

    def failing_save(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(akv_main, "save_keyring", failing_save)
    try:
        akv_main.cmd_rotate(session)
        assert session.keyring.primary_kid == old_kid
        assert len(session.keyring) == 1
    finally:
        session.close()
