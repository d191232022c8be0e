"""Event fan-out and subscription handles."""

from .bus import EventBus, StreamSubscription, Subscription

__all__ = ["EventBus", "StreamSubscription", "Subscription"]
