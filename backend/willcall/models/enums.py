from enum import Enum


class AppointmentStatus(str, Enum):
    SCHEDULED = "Scheduled"
    CONFIRMED = "Confirmed"
    IN_PROGRESS = "InProgress"
    READY = "Ready"
    NO_SHOW = "NoShow"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class NotificationType(str, Enum):
    SCHEDULED_CONFIRM = "ScheduledConfirm"
    REMINDER_1_DAY = "Reminder1Day"
    REMINDER_1_HOUR = "Reminder1Hour"
    RESCHEDULED = "Rescheduled"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"
    ORDER_LIST_CHANGED = "OrderListChanged"
    READY_FOR_PICKUP = "ReadyForPickup"


class NotificationChannel(str, Enum):
    SMS = "SMS"
    EMAIL = "Email"
    BOTH = "Both"


class NotificationJobStatus(str, Enum):
    PENDING = "Pending"
    SENT = "Sent"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


REMINDER_TYPES = frozenset({
    NotificationType.REMINDER_1_DAY.value,
    NotificationType.REMINDER_1_HOUR.value,
})
