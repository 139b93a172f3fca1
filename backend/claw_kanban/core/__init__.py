"""
Claw-Kanban - Core Package
==========================

Configuration, persistence, models, schemas and the run supervisor.
"""

from claw_kanban.core.config import settings
from claw_kanban.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
