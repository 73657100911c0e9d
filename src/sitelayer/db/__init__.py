"""SQLAlchemy persistence for resource state."""

from sitelayer.db.models import Base, ResourceStateModel, StateLockModel
from sitelayer.db.session import create_engine, create_session_factory, is_memory_url

__all__ = [
    "Base",
    "ResourceStateModel",
    "StateLockModel",
    "create_engine",
    "create_session_factory",
    "is_memory_url",
]
