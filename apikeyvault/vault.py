"""
API Key Vault - Vault Module

This file handles:
- Adding credentials (one at a time or mass-add for one service)
- Editing credentials (re-encrypting changed secrets)
- Deleting, listing and exporting credentials
- Re-encrypting everything after a key rotation

Secrets are encrypted with the field cipher BEFORE they are handed to the
store; the store only ever sees ciphertext. Listing never decrypts: use
RevealState (reveal.py) to show or copy a secret.
"""

import re
import json
import logging
from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, Optional

from .config import CREDENTIALS_TABLE
from .fields import FieldCipher
from .models import CredentialRecord

logger = logging.getLogger(__name__)

EXPORT_FIELDS = (
    "service_name", "email_username", "encrypted_password", "encrypted_api_key",
    "notes", "tags", "created_at", "updated_at",
)


def _clean_tags(tags: Iterable[str]) -> List[str]:
    seen = []
    for tag in tags or ():
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def group_by_service(records: Iterable[CredentialRecord]) -> "OrderedDict[str, List[CredentialRecord]]":
    """Group records by service name, keeping the order they arrive in."""
    groups: "OrderedDict[str, List[CredentialRecord]]" = OrderedDict()
    for record in records:
        groups.setdefault(record.service_name, []).append(record)
    return groups


def export_filename(service_name: str, today: Optional[date] = None) -> str:
    """File name for an export, e.g. 'open-ai-keys-2025-10-10.json'."""
    slug = re.sub(r"\s+", "-", service_name.strip().lower())
    return f"{slug}-keys-{(today or date.today()).isoformat()}.json"


# =============================================================================
# CREDENTIAL MANAGER
# =============================================================================

class CredentialManager:
    """
    Credential operations over an owner-scoped store.

    Usage:
        store = SQLiteStore("vault.db", owner_id="alice")
        manager = CredentialManager(store, FieldCipher(ring))

        record = manager.add_credential("OpenAI", api_key="sk-abc")
        for record in manager.list_credentials():
            ...
        manager.delete_credential(record.id)

    Every mutation goes straight to the store; callers re-fetch lists
    afterwards instead of patching them locally.
    """

    def __init__(self, store, cipher: FieldCipher, table: str = CREDENTIALS_TABLE):
        self.store = store
        self.cipher = cipher
        self.table = table

    # =========================================================================
    # CREATE
    # =========================================================================

    def add_credential(
        self,
        service_name: str,
        api_key: str,
        email_username: str = "",
        password: str = "",
        notes: str = "",
        tags: Iterable[str] = (),
    ) -> CredentialRecord:
        """
        Encrypt and store one credential.

        Args:
            service_name: Service label (required, e.g. "OpenAI")
            api_key: Secret/API key (required)
            email_username: Account identifier, stored in plaintext
            password: Optional password; '' stores no password
            notes: Free text, stored in plaintext
            tags: Labels for the record

        Returns:
            The stored record (ciphertext fields, server timestamps)
        """
        row = self._new_row(service_name, api_key, email_username, password, notes, tags)
        inserted = self.store.insert(self.table, [row])
        logger.info(f"Added credential {inserted[0]['id']} for {service_name}")
        return CredentialRecord.from_row(inserted[0])

    def mass_add(self, service_name: str, rows: Iterable[Dict[str, str]]) -> List[CredentialRecord]:
        """
        Add several credentials for one service in a single insert.

        Each row may carry api_key, email_username, password, notes and tags.
        Rows with a blank api_key are skipped. All rows are encrypted before
        anything is written, so an encryption failure stores nothing.

        Raises:
            ValueError: no row has an API key
        """
        self._require_service(service_name)
        valid = [r for r in rows if (r.get("api_key") or "").strip()]
        if not valid:
            raise ValueError("At least one row must have an API key")

        prepared = [
            self._new_row(
                service_name,
                r["api_key"],
                r.get("email_username", ""),
                r.get("password", ""),
                r.get("notes", ""),
                r.get("tags", ()),
            )
            for r in valid
        ]
        inserted = self.store.insert(self.table, prepared)
        logger.info(f"Mass-added {len(inserted)} credential(s) for {service_name}")
        return [CredentialRecord.from_row(r) for r in inserted]

    # =========================================================================
    # READ
    # =========================================================================

    def list_credentials(self) -> List[CredentialRecord]:
        """All of the owner's credentials, by service then newest first."""
        rows = self.store.select(
            self.table, order=[("service_name", True), ("created_at", False)]
        )
        return [CredentialRecord.from_row(r) for r in rows]

    def list_service(self, service_name: str) -> List[CredentialRecord]:
        """Credentials of one service, newest first."""
        rows = self.store.select(
            self.table, {"service_name": service_name}, order=[("created_at", False)]
        )
        return [CredentialRecord.from_row(r) for r in rows]

    def get_credential(self, record_id: str) -> Optional[CredentialRecord]:
        rows = self.store.select(self.table, {"id": record_id})
        return CredentialRecord.from_row(rows[0]) if rows else None

    def services(self) -> List[str]:
        return list(group_by_service(self.list_credentials()))

    # =========================================================================
    # UPDATE
    # =========================================================================

    def edit_credential(
        self,
        record_id: str,
        service_name: Optional[str] = None,
        email_username: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> CredentialRecord:
        """
        Change a credential. Arguments left as None stay unchanged.

        Only secrets that are passed get re-encrypted. password='' removes the
        stored password; an empty api_key is rejected.

        Raises:
            ValueError: empty service name or API key
            RecordNotFound: no such record for this owner
        """
        patch = {}
        if service_name is not None:
            self._require_service(service_name)
            patch["service_name"] = service_name.strip()
        if email_username is not None:
            patch["email_username"] = email_username
        if notes is not None:
            patch["notes"] = notes
        if tags is not None:
            patch["tags"] = _clean_tags(tags)
        if api_key is not None:
            if not api_key.strip():
                raise ValueError("API key cannot be empty")
            patch["encrypted_api_key"] = self.cipher.encrypt(api_key)
        if password is not None:
            patch["encrypted_password"] = self.cipher.encrypt(password) if password else ""

        row = self.store.update(self.table, record_id, patch)
        logger.info(f"Edited credential {record_id} ({', '.join(sorted(patch)) or 'no changes'})")
        return CredentialRecord.from_row(row)

    def reencrypt_all(self) -> int:
        """
        Re-encrypt every stored secret under the cipher's primary key.

        Run after KeyRing.rotate(). Values already under the primary key are
        left alone.

        Returns:
            Number of records rewritten
        """
        primary = self.cipher.keyring.primary_kid
        count = 0
        for record in self.list_credentials():
            patch = {}
            for column in ("encrypted_api_key", "encrypted_password"):
                token = getattr(record, column)
                if token and self.cipher.key_id_of(token) != primary:
                    patch[column] = self.cipher.encrypt(self.cipher.decrypt(token))
            if patch:
                self.store.update(self.table, record.id, patch)
                count += 1
        logger.info(f"Re-encrypted {count} credential(s) under key {primary}")
        return count

    # =========================================================================
    # DELETE / EXPORT
    # =========================================================================

    def delete_credential(self, record_id: str) -> None:
        """
        Permanently delete a credential.

        Asking the user for confirmation is the caller's job.
        """
        self.store.delete(self.table, record_id)
        logger.info(f"Deleted credential {record_id}")

    def export_service(self, service_name: str) -> str:
        """
        JSON export of one service's credentials.

        Secrets stay encrypted in the export; ids and owner are left out.
        """
        data = [
            {name: getattr(record, name) for name in EXPORT_FIELDS}
            for record in self.list_service(service_name)
        ]
        return json.dumps(data, indent=2, ensure_ascii=False)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @staticmethod
    def _require_service(service_name: str) -> None:
        if not service_name or not service_name.strip():
            raise ValueError("Service name is required")

    def _new_row(self, service_name, api_key, email_username, password, notes, tags) -> Dict:
        self._require_service(service_name)
        if not api_key or not api_key.strip():
            raise ValueError("API key is required")
        return {
            "service_name": service_name.strip(),
            "email_username": email_username or "",
            "encrypted_password": self.cipher.encrypt(password) if password else "",
            "encrypted_api_key": self.cipher.encrypt(api_key),
            "notes": notes or "",
            "tags": _clean_tags(tags),
        }
