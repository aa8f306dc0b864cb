"""
API Key Vault - Personal credential manager for per-service API keys.

Secrets (API keys, passwords) are encrypted on this machine before they are
written to the database and decrypted only when you reveal or copy them.

Key Features:
- Client-side field encryption: AES-256-GCM, one nonce per value
- Owner-scoped storage: every row belongs to one user
- Key management: passphrase-wrapped key file, rotation, recovery shares
- Reveal/copy state: explicit per-record visibility and decrypt cache

Components:
- errors.py: Exception hierarchy
- config.py: Constants and environment settings
- crypto.py: Low-level primitives (scrypt, AES-GCM, password generator)
- keys.py: Key ring, key file, environment keys
- fields.py: encrypt()/decrypt() for individual secret strings
- recovery.py: Shamir Secret Sharing for the field key
- store.py: SQLite persistence with owner-scoped rows
- models.py: CredentialRecord
- vault.py: Add/edit/delete/list/export credentials
- reveal.py: Reveal and copy-to-clipboard state

Usage:
    python akv_main.py                  # Interactive menu
"""

__version__ = "0.3.0"
__author__ = "API Key Vault Team"
