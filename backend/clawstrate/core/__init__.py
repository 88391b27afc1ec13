"""
Clawstrate - Core Package
=========================

Configuration, persistence, locks and pipeline orchestration.
"""

from clawstrate.core.config import settings
from clawstrate.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
