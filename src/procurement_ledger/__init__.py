"""Multi-tenant procurement budget ledger."""

__version__ = "0.1.0"
