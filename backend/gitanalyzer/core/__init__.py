from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.core.database import Base, get_db, async_session_maker, engine

__all__ = [
    "Settings",
    "get_settings",
    "Base",
    "get_db",
    "async_session_maker",
    "engine",
]
