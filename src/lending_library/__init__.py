"""
Lending library core.

Tracks a library's circulating inventory: how many copies of each book are
on the shelf, who has them, who is waiting for them, and what is owed when
they come back late.

Key Components:
- models: Pydantic models for books, users, loans, reservations and fines
- database: SQLAlchemy schema, sessions and the lending repositories
- config: Configuration management with pydantic-settings
- policy: Actor identity and role checks
- tools: MCP tools wrapping the lending operations
"""

__version__ = "0.1.0"

from . import database

__all__ = [
    "__version__",
    "database",
]
