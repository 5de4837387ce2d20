"""Persistence: ORM models, engine, tenant-scoped repositories."""
