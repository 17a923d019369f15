from .base import CursorTracker, Delivery, EventFeed
from .hyperion import HyperionFeed

__all__ = ["CursorTracker", "Delivery", "EventFeed", "HyperionFeed"]
