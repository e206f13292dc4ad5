"""Event fan-out: in-process bus, progress throttling, optional Redis relay."""
from events.bus import EventBus, Subscription, ProgressThrottle, DROP_OLDEST, DROP_NEW
from events.relay import RedisEventRelay

__all__ = [
    "EventBus", "Subscription", "ProgressThrottle", "DROP_OLDEST", "DROP_NEW",
    "RedisEventRelay",
]
