"""SQLite schema migrations for auth state."""

from cacheguard.core.migrations.runner import apply_migrations

__all__ = ["apply_migrations"]
