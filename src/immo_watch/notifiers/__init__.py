"""Notification services for listing alerts."""

from immo_watch.notifiers.base import NotificationAdapter, NotificationDispatcher
from immo_watch.notifiers.console import ConsoleNotifier
from immo_watch.notifiers.telegram import TelegramNotifier, format_listing_message

__all__ = [
    "ConsoleNotifier",
    "NotificationAdapter",
    "NotificationDispatcher",
    "TelegramNotifier",
    "format_listing_message",
]
