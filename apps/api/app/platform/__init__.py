from app.platform.repository import BaseRepository, Predicate
from app.platform.security import AuthContext

__all__ = [
    "AuthContext",
    "BaseRepository",
    "Predicate",
]
