from app.platform.security.context import SYSTEM_ACTOR, AuthContext
from app.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "BaseRepository",
    "SYSTEM_ACTOR",
]
