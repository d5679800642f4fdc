from . import events, push

__all__ = ["events", "push"]
