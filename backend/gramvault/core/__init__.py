"""
GramVault - Core Package
========================

Configuration, persistence, the platform client and the upload engine.
"""

from gramvault.core.config import settings
from gramvault.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
