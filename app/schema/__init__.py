"""Schema package exports."""

from .dispatch_logs import PushDispatchLog
from .subscribers import PushSubscriber

__all__ = ["PushDispatchLog", "PushSubscriber"]
