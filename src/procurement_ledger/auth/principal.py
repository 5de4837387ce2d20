"""Authenticated caller identity."""

from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, extracted from API key during authentication.

    ``tenant_id`` is the caller's tenant claim that the request binding
    reconciles against the tenant named in the URL.
    """

    tenant_id: uuid.UUID
    tenant_name: str
    key_prefix: str

    @property
    def user_id(self) -> str:
        """Identifier recorded in the audit trail."""
        return self.key_prefix
