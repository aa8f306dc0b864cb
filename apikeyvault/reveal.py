"""
API Key Vault - Reveal / Copy State

Tracks, for every displayed record and secret field, whether the plaintext
is currently shown, and caches decrypted values so a second reveal doesn't
decrypt again.

States per (record id, field):
    Hidden   (initial)  masked placeholder is shown
    Revealed            plaintext is shown

    Hidden -> Revealed: decrypt unless cached; on failure stay Hidden and
                        record an error for the caller to show
    Revealed -> Hidden: drop the flag only, keep the cache

The cache is keyed by (record id, field) and remembers the ciphertext it
came from, so an edited record is decrypted again.

Copying decrypts (cache first), writes to the clipboard and sets a
"copied" indicator that expires COPIED_INDICATOR_SECONDS later.

A RevealState belongs to whatever lists the records. It holds plaintext,
so call reset() when the list is closed and forget() after a delete.
"""

import time
import logging
from typing import Callable, Dict, Optional, Set, Tuple

import pyperclip

from . import config
from .errors import ClipboardError, DecryptionError, EncryptionError
from .fields import FieldCipher
from .models import CredentialRecord, SECRET_FIELDS

logger = logging.getLogger(__name__)

Slot = Tuple[str, str]


class RevealState:
    """Visibility flags, decrypt cache and copied indicator for a record list."""

    def __init__(
        self,
        cipher: FieldCipher,
        clipboard: Callable[[str], None] = pyperclip.copy,
        clock: Callable[[], float] = time.monotonic,
        copied_timeout: float = config.COPIED_INDICATOR_SECONDS,
    ):
        self.cipher = cipher
        self.clipboard = clipboard
        self.clock = clock
        self.copied_timeout = copied_timeout

        self._visible: Set[Slot] = set()
        self._cache: Dict[Slot, Tuple[str, str]] = {}   # slot -> (ciphertext, plaintext)
        self._errors: Dict[Slot, str] = {}
        self._copied: Optional[Tuple[Slot, float]] = None

    # =========================================================================
    # REVEAL
    # =========================================================================

    def is_revealed(self, record_id: str, field: str) -> bool:
        return (record_id, field) in self._visible

    def toggle(self, record: CredentialRecord, field: str) -> bool:
        """
        Flip a field between Hidden and Revealed.

        Returns:
            True if the field is now revealed. False if it is hidden, either
            because it was revealed before or because decryption failed
            (see error()).
        """
        slot = self._slot(record, field)
        if slot in self._visible:
            self._visible.discard(slot)
            return False
        return self.reveal(record, field)

    def reveal(self, record: CredentialRecord, field: str) -> bool:
        """Move a field to Revealed. Returns False if it can't be decrypted."""
        slot = self._slot(record, field)
        if self._plaintext(record, field) is None:
            return False
        self._visible.add(slot)
        return True

    def hide(self, record_id: str, field: str) -> None:
        self._visible.discard((record_id, field))

    def display(self, record: CredentialRecord, field: str) -> str:
        """
        Text to show for a field: plaintext when revealed, a masked
        placeholder when hidden, '-' when nothing is stored.
        """
        slot = self._slot(record, field)
        if not record.ciphertext(field):
            return config.EMPTY_FIELD_TEXT
        if slot in self._visible:
            cached = self._cache.get(slot)
            if cached and cached[0] == record.ciphertext(field):
                return cached[1]
            # Record changed under us; hide until revealed again
            self._visible.discard(slot)
        return config.MASKED_PASSWORD if field == "password" else config.MASKED_SECRET

    def error(self, record_id: str, field: str) -> Optional[str]:
        """Last reveal/copy error for a field, None if the last attempt worked."""
        return self._errors.get((record_id, field))

    # =========================================================================
    # COPY
    # =========================================================================

    def copy(self, record: CredentialRecord, field: str) -> None:
        """
        Put a field's plaintext on the clipboard and set the copied indicator.

        Raises:
            DecryptionError / EncryptionError: value can't be decrypted
            ClipboardError: clipboard write failed
            ValueError: field holds no value
        """
        slot = self._slot(record, field)
        if not record.ciphertext(field):
            raise ValueError(f"No {field} stored for this record")

        plaintext = self._plaintext(record, field)
        if plaintext is None:
            raise DecryptionError(self._errors[slot])

        try:
            self.clipboard(plaintext)
        except pyperclip.PyperclipException as e:
            self._errors[slot] = f"Clipboard unavailable: {e}"
            logger.warning(f"Clipboard write failed for {slot[0]}/{field}: {e}")
            raise ClipboardError(self._errors[slot]) from e

        self._errors.pop(slot, None)
        self._copied = (slot, self.clock())

    def copied(self, record_id: str, field: str) -> bool:
        """True while the copied indicator for this field is active."""
        slot = self.copied_slot()
        return slot == (record_id, field)

    def copied_slot(self) -> Optional[Slot]:
        """The slot showing the copied indicator, clearing it once expired."""
        if self._copied is None:
            return None
        slot, at = self._copied
        if self.clock() - at >= self.copied_timeout:
            self._copied = None
            return None
        return slot

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def forget(self, record_id: str) -> None:
        """Drop all state for one record (e.g. after it was deleted)."""
        for field in SECRET_FIELDS:
            slot = (record_id, field)
            self._visible.discard(slot)
            self._cache.pop(slot, None)
            self._errors.pop(slot, None)
        if self._copied and self._copied[0][0] == record_id:
            self._copied = None

    def reset(self) -> None:
        """Hide everything and discard all cached plaintext."""
        self._visible.clear()
        self._cache.clear()
        self._errors.clear()
        self._copied = None

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @staticmethod
    def _slot(record: CredentialRecord, field: str) -> Slot:
        if field not in SECRET_FIELDS:
            raise ValueError(f"Unknown secret field: {field}")
        return (record.id, field)

    def _plaintext(self, record: CredentialRecord, field: str) -> Optional[str]:
        """Cached or freshly decrypted plaintext; None (and an error) on failure."""
        slot = (record.id, field)
        ciphertext = record.ciphertext(field)
        if not ciphertext:
            self._errors[slot] = f"No {field} stored"
            return None

        cached = self._cache.get(slot)
        if cached and cached[0] == ciphertext:
            self._errors.pop(slot, None)
            return cached[1]

        try:
            plaintext = self.cipher.decrypt(ciphertext)
        except (DecryptionError, EncryptionError) as e:
            self._errors[slot] = str(e)
            logger.warning(f"Could not decrypt {field} of {record.id}: {e}")
            return None

        self._cache[slot] = (ciphertext, plaintext)
        self._errors.pop(slot, None)
        return plaintext
