from pushrelay.services.notifications.service import (
    CancelResult,
    DeliverySummary,
    NotificationDetails,
    NotificationPage,
    NotificationRequest,
    QueuedBulk,
    QueuedNotification,
    StaticTokenResolver,
    TokenResolver,
    cancel_notification,
    determine_priority,
    get_delivery_responses,
    get_notification_details,
    get_notification_status,
    list_notifications,
    queue_bulk_notifications,
    queue_notification,
    retry_notification,
    summarize_responses,
)
from pushrelay.services.notifications.state import Aggregates, compute_aggregates

__all__ = [
    "Aggregates",
    "CancelResult",
    "DeliverySummary",
    "NotificationDetails",
    "NotificationPage",
    "NotificationRequest",
    "QueuedBulk",
    "QueuedNotification",
    "StaticTokenResolver",
    "TokenResolver",
    "cancel_notification",
    "compute_aggregates",
    "determine_priority",
    "get_delivery_responses",
    "get_notification_details",
    "get_notification_status",
    "list_notifications",
    "queue_bulk_notifications",
    "queue_notification",
    "retry_notification",
    "summarize_responses",
]
