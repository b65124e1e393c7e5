"""
Collaborator interfaces and default implementations.

- base: ElementAccessor, UserDecisionChannel, NotificationChannel
- snapshot: SnapshotElement (accessor over a serialized element)
- channels: NullDecisionChannel, LoggingNotificationChannel
"""

from .base import ElementAccessor, NotificationChannel, UserDecisionChannel
from .channels import LoggingNotificationChannel, NullDecisionChannel
from .snapshot import SnapshotElement

__all__ = [
    "ElementAccessor",
    "NotificationChannel",
    "UserDecisionChannel",
    "LoggingNotificationChannel",
    "NullDecisionChannel",
    "SnapshotElement",
]
