"""
API Key Vault - Interactive Menu

Main user interface for the credential manager.
Features:
- Create/unlock the field key (passphrase-protected key file)
- Add credentials (single or mass-add per service)
- List credentials grouped by service, or one service at a time
- Reveal/hide and copy secrets
- Edit/delete credentials
- Export a service to JSON (secrets stay encrypted)
- Rotate the field key, create a recovery kit, recover from shares
"""

import os
import sys
import getpass
import logging

from apikeyvault import config
from apikeyvault.errors import VaultError, PersistenceError, EncryptionError, ClipboardError
from apikeyvault.fields import install_keyring, clear_keyring
from apikeyvault.keys import KeyRing, save_keyring, load_keyring, keyring_from_env, backup_key_file
from apikeyvault.recovery import generate_recovery_shares, format_recovery_kit, recover_keyring
from apikeyvault.reveal import RevealState
from apikeyvault.store import SQLiteStore
from apikeyvault.vault import CredentialManager, group_by_service, export_filename
from apikeyvault import crypto

FIELD_LABELS = {"api_key": "API key", "password": "Password"}


class Session:
    """Everything the menu holds between commands."""

    def __init__(self, settings: config.Settings):
        self.settings = settings
        self.keyring = None
        self.cipher = None
        self.store = None
        self.manager = None
        self.reveal = None
        self.listed = []        # records from the last listing, for # selection

    @property
    def unlocked(self) -> bool:
        return self.manager is not None

    def open(self, keyring: KeyRing) -> None:
        self.close()
        self.keyring = keyring
        self.cipher = install_keyring(keyring)
        ensure_dir(self.settings.db_path)
        self.store = SQLiteStore(self.settings.db_path, self.settings.owner_id)
        self.manager = CredentialManager(self.store, self.cipher)
        self.reveal = RevealState(self.cipher)

    def close(self) -> None:
        if self.reveal:
            self.reveal.reset()
        if self.store:
            self.store.close()
        clear_keyring()
        self.keyring = self.cipher = self.store = self.manager = self.reveal = None
        self.listed = []


def clear_screen():
    os.system("cls" if os.name == "nt" else "clear")


def pause():
    input("\nPress Enter to continue...")


def ensure_dir(path):
    d = os.path.dirname(path)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def ask_new_passphrase(prompt="Key file passphrase"):
    while True:
        pw = getpass.getpass(f"{prompt}: ")
        pw2 = getpass.getpass("Confirm: ")
        if pw != pw2:
            print("Passphrases don't match.\n")
            continue
        if len(pw) < 8:
            print("Too short (min 8 chars).\n")
            continue
        return pw


def with_retry(action, *args, **kwargs):
    """Run a store-backed action, offering a retry on transient failures."""
    while True:
        try:
            return action(*args, **kwargs)
        except PersistenceError as e:
            print(f"\nERROR: {e}")
            if not e.retryable or input("Retry? [y/N]: ").strip().lower() != 'y':
                raise


def require_unlocked(session):
    return session.unlocked or unlock_flow(session)


def unlock_flow(session):
    settings = session.settings
    try:
        if settings.field_key:
            ring = keyring_from_env(settings.field_key)
            print(f"\nUsing field key from ${config.ENV_FIELD_KEY}.")
        else:
            if not os.path.exists(settings.key_file):
                print(f"\nERROR: No key file at {settings.key_file}. Create one first.")
                pause()
                return False
            ring = load_keyring(settings.key_file, getpass.getpass("\nKey file passphrase: "))
        session.open(ring)
    except VaultError as e:
        print(f"\nERROR: Failed to unlock ({e}).")
        pause()
        return False
    print(f"\n✓ Unlocked (primary key {ring.primary_kid}).")
    return True


def print_records(session, records, with_service=True):
    session.listed = list(records)
    reveal = session.reveal
    if not records:
        print("No credentials.")
        return
    for i, r in enumerate(records, 1):
        service = f"{r.service_name:<16}  " if with_service else ""
        print(f"{i:<4}  {service}{r.email_username or '-':<24}  {r.created_at[:10]}  {r.id[:8]}...")
        for field in ("password", "api_key"):
            marks = []
            if reveal.copied(r.id, field):
                marks.append("copied!")
            err = reveal.error(r.id, field)
            if err:
                marks.append(f"error: {err}")
            print(f"      {FIELD_LABELS[field]:<9} {reveal.display(r, field)}  {' '.join(marks)}")
        if r.tags:
            print(f"      Tags      {', '.join(r.tags)}")
        if r.notes:
            print(f"      Notes     {r.notes}")


def pick_record(session, prompt="Enter # or ID"):
    """Choose a record by number from the last listing or by (partial) id."""
    if not session.listed:
        session.listed = with_retry(session.manager.list_credentials)
        print_records(session, session.listed)
    choice = input(f"\n{prompt}: ").strip()
    if not choice:
        return None
    if choice.isdigit() and 1 <= int(choice) <= len(session.listed):
        return session.listed[int(choice) - 1]
    matches = [r for r in session.listed if r.id.startswith(choice)]
    if len(matches) == 1:
        return matches[0]
    print("Multiple matches. Please use full ID." if matches else "Entry not found.")
    return None


def pick_field(record):
    if not record.has_password:
        return "api_key"
    choice = input("Field: 1) API key  2) Password [1]: ").strip()
    return "password" if choice == '2' else "api_key"


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_create_key(session):
    clear_screen()
    print("=== Create Field Key ===\n")
    path = session.settings.key_file
    if os.path.exists(path):
        print(f"Key file exists at: {path}")
        pause()
        return
    pw = ask_new_passphrase()
    print("\nGenerating key...")
    ring = KeyRing.generate()
    save_keyring(path, ring, pw)
    session.open(ring)
    print(f"\n✓ Key file created at {path} (key {ring.primary_kid}).")
    print("  Create a recovery kit next: without the key, stored secrets are lost.")
    pause()


def cmd_add(session):
    clear_screen()
    print("=== Add Credential ===\n")
    if not require_unlocked(session):
        return
    service = input("Service name (required): ").strip()
    email = input("Email/Username (optional): ").strip()
    api_key = getpass.getpass("API key (required): ")
    password = getpass.getpass("Password (optional, 'g' to generate): ")
    if password == 'g':
        password = crypto.generate_password()
        print(f"Generated: {password}")
    notes = input("Notes (optional): ").strip()
    tags = [t for t in input("Tags, comma separated (optional): ").split(",") if t.strip()]
    try:
        record = with_retry(session.manager.add_credential, service, api_key,
                            email_username=email, password=password, notes=notes, tags=tags)
        print(f"\n✓ Added! ID: {record.id}")
    except (ValueError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_mass_add(session):
    clear_screen()
    print("=== Mass Add ===\n")
    if not require_unlocked(session):
        return
    service = input("Service name (required): ").strip()
    rows = []
    print("Enter one credential per row. Leave the API key empty to finish.\n")
    while True:
        print(f"-- Row {len(rows) + 1} --")
        api_key = getpass.getpass("API key: ")
        if not api_key.strip():
            break
        rows.append({
            "api_key": api_key,
            "email_username": input("Email/Username: ").strip(),
            "password": getpass.getpass("Password (optional): "),
            "notes": input("Notes: ").strip(),
        })
    try:
        added = with_retry(session.manager.mass_add, service, rows)
        print(f"\n✓ Added {len(added)} credential(s) for {service}.")
    except (ValueError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_list(session):
    clear_screen()
    print("=== Credentials ===\n")
    if not require_unlocked(session):
        return
    try:
        records = with_retry(session.manager.list_credentials)
    except VaultError as e:
        print(f"ERROR: {e}")
        pause()
        return
    groups = group_by_service(records)
    ordered = [r for rs in groups.values() for r in rs]
    session.listed = ordered
    n = 0
    for service, rs in groups.items():
        print(f"\n## {service} ({len(rs)} key{'s' if len(rs) != 1 else ''})")
        for r in rs:
            n += 1
            print(f"{n:<4}  {r.email_username or '-':<24}  "
                  f"{session.reveal.display(r, 'api_key')}  {r.id[:8]}...")
    if not records:
        print("No credentials yet.")
    pause()


def cmd_service(session):
    clear_screen()
    print("=== Service ===\n")
    if not require_unlocked(session):
        return
    service = input("Service name: ").strip()
    try:
        records = with_retry(session.manager.list_service, service)
    except VaultError as e:
        print(f"ERROR: {e}")
        pause()
        return
    print(f"\nManaging {len(records)} API key{'s' if len(records) != 1 else ''} for {service}\n")
    print_records(session, records, with_service=False)
    pause()


def cmd_reveal(session):
    clear_screen()
    print("=== Reveal / Hide ===\n")
    if not require_unlocked(session):
        return
    record = pick_record(session)
    if not record:
        pause()
        return
    field = pick_field(record)
    shown = session.reveal.toggle(record, field)
    print(f"\n  {FIELD_LABELS[field]}: {session.reveal.display(record, field)}")
    err = session.reveal.error(record.id, field)
    if not shown and err:
        print(f"  ERROR: {err}")
    pause()


def cmd_copy(session):
    clear_screen()
    print("=== Copy to Clipboard ===\n")
    if not require_unlocked(session):
        return
    record = pick_record(session)
    if not record:
        pause()
        return
    field = pick_field(record)
    try:
        session.reveal.copy(record, field)
        print(f"\n✓ {FIELD_LABELS[field]} for '{record.service_name}' copied to clipboard!")
    except (ValueError, ClipboardError, VaultError) as e:
        print(f"\nERROR: {e}")
    pause()


def cmd_edit(session):
    clear_screen()
    print("=== Edit Credential ===\n")
    if not require_unlocked(session):
        return
    record = pick_record(session)
    if not record:
        pause()
        return
    print("Press Enter to keep the current value.\n")
    service = input(f"Service [{record.service_name}]: ").strip() or None
    email = input(f"Email/Username [{record.email_username}]: ").strip() or None
    api_key = getpass.getpass("New API key (hidden): ") or None
    password = getpass.getpass("New password (hidden, '-' to remove): ") or None
    if password == '-':
        password = ""
    notes = input(f"Notes [{record.notes}]: ").strip() or None
    tags_in = input(f"Tags [{', '.join(record.tags)}]: ").strip()
    tags = [t for t in tags_in.split(",")] if tags_in else None
    try:
        with_retry(session.manager.edit_credential, record.id, service_name=service,
                   email_username=email, password=password, api_key=api_key,
                   notes=notes, tags=tags)
        session.listed = []
        print("\n✓ Updated.")
    except (ValueError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_delete(session):
    clear_screen()
    print("=== Delete Credential ===\n")
    if not require_unlocked(session):
        return
    record = pick_record(session, "Enter # or ID to delete")
    if not record:
        pause()
        return
    print(f"\nAbout to delete:")
    print(f"  Service: {record.service_name}")
    print(f"  Email/Username: {record.email_username or '-'}")
    print(f"  ID: {record.id}")
    if input("\nType 'yes' to confirm: ").strip().lower() != 'yes':
        print("Cancelled.")
        pause()
        return
    try:
        with_retry(session.manager.delete_credential, record.id)
        session.reveal.forget(record.id)
        session.listed = []
        print("\n✓ Deleted.")
    except VaultError as e:
        print(f"ERROR: {e}")
    pause()


def cmd_export(session):
    clear_screen()
    print("=== Export Service ===\n")
    if not require_unlocked(session):
        return
    service = input("Service name: ").strip()
    default = export_filename(service)
    out = input(f"Output file [{default}]: ").strip() or default
    try:
        data = with_retry(session.manager.export_service, service)
        with open(out, 'w', encoding='utf-8') as f:
            f.write(data)
        print(f"\n✓ Saved to: {out}")
    except (OSError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_rotate(session):
    clear_screen()
    print("=== Rotate Field Key ===\n")
    if not require_unlocked(session):
        return
    if session.settings.field_key:
        print(f"Field key comes from ${config.ENV_FIELD_KEY}; rotate it there.")
        pause()
        return
    pw = getpass.getpass("Key file passphrase: ")
    try:
        load_keyring(session.settings.key_file, pw)
    except (OSError, VaultError) as e:
        print(f"ERROR: {e}")
        pause()
        return
    old_kid = session.keyring.primary_kid
    kid = session.keyring.rotate()
    try:
        # Save before rewriting rows so the new key is never lost
        save_keyring(session.settings.key_file, session.keyring, pw)
    except (OSError, VaultError) as e:
        session.keyring.primary_kid = old_kid
        session.keyring.drop(kid)
        print(f"ERROR: {e}")
        pause()
        return
    try:
        count = with_retry(session.manager.reencrypt_all)
        session.reveal.reset()
        print(f"\n✓ New primary key {kid}; re-encrypted {count} credential(s).")
        print("  Create a new recovery kit: old kits rebuild the old key only.")
    except VaultError as e:
        print(f"ERROR: {e}")
    pause()


def cmd_recovery_create(session):
    clear_screen()
    print("=== Create Recovery Kit ===\n")
    if not require_unlocked(session):
        return
    try:
        k = int(input("Threshold [3]: ").strip() or 3)
        n = int(input("Total shares [5]: ").strip() or 5)
    except ValueError:
        k, n = 3, 5
    out = input("Output file [recovery_kit.txt]: ").strip() or "recovery_kit.txt"
    try:
        shares = generate_recovery_shares(session.keyring.primary, k, n)
        kit = format_recovery_kit(shares, session.keyring.primary_kid, k)
        with open(out, 'w') as f:
            f.write(kit)
        print(f"\n✓ Saved to: {out}")
    except (ValueError, OSError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_recover(session):
    clear_screen()
    print("=== Recover Field Key ===\n")
    print("Enter recovery shares (one per line). Press Enter on empty line when done.\n")
    shares = []
    while True:
        share = input(f"Share {len(shares) + 1}: ").strip()
        if not share:
            break
        shares.append(share)
    try:
        ring = recover_keyring(shares)
    except VaultError as e:
        print(f"\nERROR: {e}")
        pause()
        return
    print(f"\n✓ Key {ring.primary_kid} rebuilt.")
    key_file = session.settings.key_file
    if os.path.exists(key_file):
        print(f"\n⚠️  {key_file} already exists and will be replaced by a ring holding only")
        print("   the recovered key. Keys added by later rotations will be lost from it.")
        if input("Type 'yes' to continue: ").strip().lower() != 'yes':
            print("Cancelled.")
            pause()
            return
    pw = ask_new_passphrase("New key file passphrase")
    try:
        ensure_dir(key_file)
        backup = backup_key_file(key_file)
        if backup:
            print(f"  Previous key file saved as {backup}")
        save_keyring(key_file, ring, pw)
        session.open(ring)
        print(f"\n✓ Key file written to {session.settings.key_file}.")
    except (OSError, VaultError) as e:
        print(f"ERROR: {e}")
    pause()


def cmd_lock(session):
    clear_screen()
    print("=== Lock ===\n")
    if session.unlocked:
        session.close()
        print("✓ Locked.")
    else:
        print("Not open.")
    pause()


def print_menu(session):
    print("API Key Vault - Interactive Menu")
    print("=" * 40)
    print(f"Database: {session.settings.db_path}")
    print(f"User: {session.settings.owner_id}")
    print(f"Status: {'UNLOCKED' if session.unlocked else 'LOCKED'}")
    print("\n 1) Create field key")
    print(" 2) Unlock")
    print(" 3) Add credential")
    print(" 4) Mass add (one service)")
    print(" 5) List credentials")
    print(" 6) Show service")
    print(" 7) Reveal / hide secret")
    print(" 8) Copy secret")
    print(" 9) Edit credential")
    print("10) Delete credential")
    print("11) Export service")
    print("12) Rotate field key")
    print("13) Create recovery kit")
    print("14) Recover field key")
    print("15) Lock")
    print(" 0) Exit")


COMMANDS = {
    '1': cmd_create_key,
    '3': cmd_add,
    '4': cmd_mass_add,
    '5': cmd_list,
    '6': cmd_service,
    '7': cmd_reveal,
    '8': cmd_copy,
    '9': cmd_edit,
    '10': cmd_delete,
    '11': cmd_export,
    '12': cmd_rotate,
    '13': cmd_recovery_create,
    '14': cmd_recover,
    '15': cmd_lock,
}


def main_menu(session):
    while True:
        clear_screen()
        print_menu(session)
        c = input("\n> ").strip()
        if c == '0':
            session.close()
            print("\nGoodbye!")
            break
        if c == '2':
            if unlock_flow(session):
                pause()
            continue
        command = COMMANDS.get(c)
        if command is None:
            continue
        try:
            command(session)
        except EncryptionError as e:
            print(f"\nERROR: {e}")
            pause()


def main():
    settings = config.load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    session = Session(settings)
    try:
        main_menu(session)
    except KeyboardInterrupt:
        session.close()
        print("\nExiting...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
