"""
Workflow notifications.
"""

from clinicflow.notifications.dispatcher import (
    LoggingSink,
    NotificationDispatcher,
    NotificationEvent,
    NotificationSink,
    NotificationType,
    WebhookSink,
)
from clinicflow.notifications.messages import Message, package_ready_message, state_change_message

__all__ = [
    "LoggingSink",
    "Message",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationSink",
    "NotificationType",
    "WebhookSink",
    "package_ready_message",
    "state_change_message",
]
