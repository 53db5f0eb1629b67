"""
Privacy Hasher - one-way hashing of normalized identity values
Values are lowercased and trimmed, then SHA-256 hashed (hex). No salt: the
attribution API matches on the plain SHA-256 of the normalized value.
"""
import hashlib
import re
from typing import Optional

HASHED_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def is_hashed(value: Optional[str]) -> bool:
    """True when `value` already looks like a SHA-256 hex digest"""
    return bool(value) and HASHED_PATTERN.match(value) is not None


def hash_value(value: Optional[str]) -> Optional[str]:
    """
    Hash a single normalized value

    Args:
        value: Normalized plain-text value

    Returns:
        SHA256 hex digest of lower(trim(value)), the value itself when it is
        already a digest, or None for empty input
    """
    if value is None:
        return None
    cleaned = value.strip().lower()
    if not cleaned:
        return None
    if is_hashed(cleaned):
        return cleaned
    return hashlib.sha256(cleaned.encode("utf-8")).hexdigest()
