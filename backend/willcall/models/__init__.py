from willcall.models.appointment import PickupAppointment, PickupAppointmentOrder
from willcall.models.notification_job import AppointmentNotificationJob
from willcall.models.access_token import AppointmentAccessToken
from willcall.models.job_state import JobState
from willcall.models.order_summary import ErpOrderSummary

__all__ = [
    "PickupAppointment",
    "PickupAppointmentOrder",
    "AppointmentNotificationJob",
    "AppointmentAccessToken",
    "JobState",
    "ErpOrderSummary",
]
