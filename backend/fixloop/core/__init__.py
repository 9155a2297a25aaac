"""
Fixloop - Core Package
======================

Configuration, persistence, the resolution engine and its adapters.
"""

from fixloop.core.config import settings
from fixloop.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
