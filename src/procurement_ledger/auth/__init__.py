"""Authentication and API key management."""

from procurement_ledger.auth.keys import (
    IssuedKey,
    generate_api_key,
    hash_api_key,
    parse_api_key,
)
from procurement_ledger.auth.principal import Principal

__all__ = [
    "IssuedKey",
    "Principal",
    "generate_api_key",
    "hash_api_key",
    "parse_api_key",
]
