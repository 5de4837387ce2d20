"""Pydantic domain models shared by the ledger, reports and API layer."""
