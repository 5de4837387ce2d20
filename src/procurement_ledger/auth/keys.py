"""Tenant API keys.

Format: ``pl_<environment>_<subdomain>_<32 hex chars>``. The tenant's
subdomain is part of the key, so a key names the tenant it was issued
for and a malformed key is rejected without a database lookup. Only the
SHA-256 hash and a display prefix are stored.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass

KEY_NAMESPACE = "pl"
KEY_ENVIRONMENTS: frozenset[str] = frozenset({"live", "test"})

# Subdomains never contain "_", so the fields split unambiguously.
_KEY_RE = re.compile(
    rf"^{KEY_NAMESPACE}_(?P<env>[a-z]+)_(?P<subdomain>[a-z0-9-]{{1,63}})"
    r"_(?P<secret>[0-9a-f]{32})$"
)
_PREFIX_SECRET_CHARS = 6


@dataclass(frozen=True)
class IssuedKey:
    """A freshly generated key. ``full_key`` is shown once, never stored."""

    full_key: str
    key_hash: str
    key_prefix: str


@dataclass(frozen=True)
class ParsedKey:
    environment: str
    subdomain: str


def generate_api_key(subdomain: str, environment: str = "live") -> IssuedKey:
    """Issue a key for the tenant addressed by ``subdomain``.

    The prefix (``pl_live_acme_3f9a1c``) identifies the key in listings,
    in ``revoke-key`` and as the audit ``user_id``.

    Raises:
        ValueError: Unknown environment.
    """
    if environment not in KEY_ENVIRONMENTS:
        msg = f"Unknown key environment: {environment}"
        raise ValueError(msg)
    secret = secrets.token_hex(16)
    head = f"{KEY_NAMESPACE}_{environment}_{subdomain}"
    full_key = f"{head}_{secret}"
    return IssuedKey(
        full_key=full_key,
        key_hash=hash_api_key(full_key),
        key_prefix=f"{head}_{secret[:_PREFIX_SECRET_CHARS]}",
    )


def parse_api_key(key: str) -> ParsedKey | None:
    """Split a presented key; None when it is not a ledger key."""
    match = _KEY_RE.match(key)
    if match is None or match["env"] not in KEY_ENVIRONMENTS:
        return None
    return ParsedKey(environment=match["env"], subdomain=match["subdomain"])


def hash_api_key(key: str) -> str:
    """SHA-256 hex digest used as the lookup column."""
    return hashlib.sha256(key.encode()).hexdigest()
