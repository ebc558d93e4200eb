"""Run-completion notifications."""

from shipyard.notifications.notifier import (
    LogNotifier,
    NotificationSink,
    RunEvent,
    WebhookNotifier,
    notify_all,
)

__all__ = ["LogNotifier", "NotificationSink", "RunEvent", "WebhookNotifier", "notify_all"]
