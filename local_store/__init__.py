"""
Local persistent store: one SQLite key/value table per installation.
"""

from .db_manager import LocalStore

__all__ = ['LocalStore']
