"""
SQLite persistence for listing records, profiles and checkpoints.
"""

from .sqlite_database import SQLiteDatabaseManager
from .repository import ResumeRepository, ProfileRepository

__all__ = [
    'SQLiteDatabaseManager',
    'ResumeRepository',
    'ProfileRepository'
]
