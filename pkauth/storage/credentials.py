# pkauth/storage/credentials.py
"""
Connection-scoped credential bindings.

There is no persistent store: a server session owns one CredentialStore and
drops it when the connection ends, so a returning client must register again.
"""
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey


class CredentialStore:
    def __init__(self):
        self._keys: Dict[str, Tuple[str, Ed25519PublicKey]] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, credential_id: str) -> bool:
        return credential_id in self._keys

    def bind(self, credential_id: str, username: str, public_key: Ed25519PublicKey) -> None:
        # Last write wins; the client picks the id and uniqueness is not enforced.
        self._keys[credential_id] = (username, public_key)

    def lookup(self, credential_id: str, username: str) -> Optional[Ed25519PublicKey]:
        """Public key bound to `credential_id` for `username`, or None."""
        entry = self._keys.get(credential_id)
        if entry is None or entry[0] != username:
            return None
        return entry[1]
