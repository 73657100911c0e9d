"""Durable record of last-applied attributes per resource."""

from sitelayer.state.models import ResourceStatus, StateRecord
from sitelayer.state.store import StateStore, StateTransaction, default_lock_holder

__all__ = [
    "ResourceStatus",
    "StateRecord",
    "StateStore",
    "StateTransaction",
    "default_lock_holder",
]
