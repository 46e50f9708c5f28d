# pkauth/crypto/sign.py
"""Ed25519 keys, challenges and signatures for the registration handshake."""
import os
import secrets
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from pkauth.common.errors import CredentialError

CHALLENGE_LENGTH = 128
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


def generate_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """Fresh keypair; one per registration, never reused."""
    private_key = Ed25519PrivateKey.generate()
    return private_key, private_key.public_key()


def new_challenge() -> bytes:
    # os.urandom is safe to call from any number of worker threads.
    return os.urandom(CHALLENGE_LENGTH)


def new_credential_id() -> str:
    return str(secrets.randbits(32))


def sign_challenge(private_key: Ed25519PrivateKey, challenge: bytes) -> bytes:
    return private_key.sign(challenge)


def verify_signature(public_key: Ed25519PublicKey, challenge: bytes, signature: bytes) -> bool:
    """
    True only if `signature` was made over exactly `challenge` by the private
    half of `public_key`.
    """
    try:
        public_key.verify(signature, challenge)
        return True
    except InvalidSignature:
        return False


def encode_public_key(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def decode_public_key(data: bytes) -> Ed25519PublicKey:
    if len(data) != PUBLIC_KEY_LENGTH:
        raise CredentialError(
            f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(data)}"
        )
    try:
        return Ed25519PublicKey.from_public_bytes(bytes(data))
    except ValueError as exc:
        raise CredentialError(f"Public key cannot be decoded: {exc}") from exc


def encode_signature(signature: bytes) -> bytes:
    if len(signature) != SIGNATURE_LENGTH:
        raise CredentialError(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}"
        )
    return bytes(signature)


def decode_signature(data: bytes) -> bytes:
    if len(data) != SIGNATURE_LENGTH:
        raise CredentialError(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(data)}"
        )
    return bytes(data)
