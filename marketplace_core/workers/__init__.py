"""Background workers for the scheduled jobs."""
from .expiration_worker import build_sweeper, start_expiration_worker
from .notification_worker import build_dispatcher, start_notification_worker

__all__ = [
    "build_dispatcher",
    "build_sweeper",
    "start_expiration_worker",
    "start_notification_worker",
]
