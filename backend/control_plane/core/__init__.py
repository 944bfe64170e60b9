"""
Runner Control Plane - Core Package
===================================

Core business logic, models, and schemas.
"""

from control_plane.core.config import settings
from control_plane.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
