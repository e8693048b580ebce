"""Database driver adapters used by the session pool.

Concrete adapters live in submodules, e.g. ``stproc.drivers.mysql``.
"""

from .base import DatabaseSession, SessionFactory, SqlDialect, Statement

__all__ = [
    "DatabaseSession",
    "SessionFactory",
    "SqlDialect",
    "Statement",
]
