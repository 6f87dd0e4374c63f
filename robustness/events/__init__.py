from robustness.events.bus import EventBus, Subscription
from robustness.events.log import EventLog, FileEventLog, create_event_log

__all__ = ["EventBus", "Subscription", "EventLog", "FileEventLog", "create_event_log"]
