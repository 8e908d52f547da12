"""Realtime notifications for download jobs."""

from .status_broadcaster import (
    InMemoryStatusBroadcaster,
    NullStatusBroadcaster,
    StatusEvent,
    Subscription,
)

__all__ = ["InMemoryStatusBroadcaster", "NullStatusBroadcaster", "StatusEvent", "Subscription"]
