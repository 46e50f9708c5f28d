# pkauth/common/utils.py
import hashlib
import os
from typing import Optional


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def short_digest(data: bytes) -> str:
    """Log-safe stand-in for secrets and challenges."""
    return sha256_hex(data)[:16]


def env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return float(value)
