"""
API Key Vault - Recovery Module (Shamir Secret Sharing)

Implements k-of-n threshold recovery of the primary field key:
- Split the key into n mnemonic shares
- Any k shares rebuild it
- Fewer than k shares reveal nothing (SLIP-0039)

Use case: the key file passphrase is forgotten or the key file is lost.
The stored ciphertext is useless without the field key, so the kit is the
only way back.
"""

from typing import List, Sequence

from shamir_mnemonic import MnemonicError, shamir

from .keys import KeyRing
from .errors import RecoveryError


def generate_recovery_shares(field_key: bytes, k: int, n: int) -> List[str]:
    """
    Split a field key into n shares (need k to recover).

    Returns:
        List of n shares, each a space-separated mnemonic sentence
    """
    if k > n:
        raise ValueError(f"k ({k}) cannot be greater than n ({n})")
    if k < 2:
        raise ValueError("k must be at least 2")
    if n > 16:
        raise ValueError("n cannot exceed 16 (library limitation)")

    # One group, k-of-n members
    groups = shamir.generate_mnemonics(
        group_threshold=1,
        groups=[(k, n)],
        master_secret=field_key,
    )
    return groups[0]


def combine_recovery_shares(shares: Sequence[str]) -> bytes:
    """
    Rebuild the field key from at least k shares.

    Raises:
        RecoveryError: shares invalid, insufficient, or from different kits
    """
    cleaned = [" ".join(share.split()) for share in shares if share.strip()]
    if len(cleaned) < 2:
        raise RecoveryError("Need at least 2 shares")
    try:
        return shamir.combine_mnemonics(cleaned)
    except (MnemonicError, ValueError) as e:
        raise RecoveryError(f"Failed to combine shares: {e}") from e


def recover_keyring(shares: Sequence[str]) -> KeyRing:
    """Key ring whose primary is the key rebuilt from `shares`."""
    return KeyRing([combine_recovery_shares(shares)])


def format_recovery_kit(shares: List[str], kid: str, k: int) -> str:
    """
    Format recovery shares for printing on paper.

    Args:
        shares: Recovery shares
        kid: Key id of the field key they rebuild
        k: Threshold (how many shares needed)
    """
    output = []
    output.append("=" * 70)
    output.append("API Key Vault RECOVERY KIT")
    output.append("=" * 70)
    output.append(f"\nField key ID: {kid}")
    output.append(f"Threshold: Need {k} of {len(shares)} shares to recover")
    output.append("\nIMPORTANT:")
    output.append("- Print this document and store shares in separate secure locations")
    output.append(f"- Any {k} shares rebuild the key if the key file or its passphrase is lost")
    output.append(f"- Losing up to {len(shares) - k} shares is okay")
    output.append("- NEVER store all shares together!\n")
    output.append("=" * 70)

    for i, share in enumerate(shares, 1):
        output.append(f"\n\nSHARE {i} of {len(shares)}")
        output.append("-" * 70)
        output.append(share)
        output.append("\n" + "-" * 70)

    output.append("\n\nTo recover:")
    output.append("1. Run: python akv_main.py and choose 'Recover field key'")
    output.append(f"2. Enter any {k} shares when prompted")
    output.append("3. Set a new key file passphrase\n")

    return "\n".join(output)
