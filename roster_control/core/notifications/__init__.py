"""Notification utilities for whitelist reconciliation events."""

from roster_control.core.notifications.sink import (
    DiscordWebhookSink,
    NotificationField,
    NotificationPayload,
    NotificationSink,
    drain_notifications,
    notify,
)
from roster_control.core.notifications.templates import (
    CATEGORY_ROLE_WHITELIST,
    CATEGORY_SECURITY,
    CATEGORY_WHITELIST,
    build_cleanup_summary_notification,
    build_member_left_notification,
    build_role_change_notification,
    build_security_upgrade_notification,
)

__all__ = [
    "CATEGORY_ROLE_WHITELIST",
    "CATEGORY_SECURITY",
    "CATEGORY_WHITELIST",
    "DiscordWebhookSink",
    "NotificationField",
    "NotificationPayload",
    "NotificationSink",
    "build_cleanup_summary_notification",
    "build_member_left_notification",
    "build_role_change_notification",
    "build_security_upgrade_notification",
    "drain_notifications",
    "notify",
]
