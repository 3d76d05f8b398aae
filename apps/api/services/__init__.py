"""
Services package for the radiology lab API
Business logic shared by the routers
"""

from .notification_bus import notification_bus, NotificationEvent, EventType

__all__ = [
    'notification_bus',
    'NotificationEvent',
    'EventType',
]
