"""
AppointmentNotificationJob model: one scheduled outbound message.

Jobs are created Pending and move exactly once to Sent, Skipped, Cancelled
or Failed. ``idempotency_key`` is unique so re-enqueuing the same
(appointment, type, scheduled_at) never creates a second row.
"""

from sqlalchemy import (
    Column, Index, String, Integer, DateTime, ForeignKey, CheckConstraint, text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from willcall.database import Base


class AppointmentNotificationJob(Base):
    __tablename__ = "appointment_notification_jobs"
    __table_args__ = (
        Index("ix_notification_jobs_due", "status", "scheduled_at"),
        Index("ix_notification_jobs_appointment_status", "appointment_id", "status"),
        CheckConstraint(
            "status IN ('Pending', 'Sent', 'Skipped', 'Cancelled', 'Failed')",
            name="ck_notification_jobs_status",
        ),
        CheckConstraint("channel IN ('SMS', 'Email', 'Both')", name="ck_notification_jobs_channel"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("pickup_appointments.id", ondelete="CASCADE"), nullable=False)

    # ScheduledConfirm, Reminder1Day, Reminder1Hour, Rescheduled, Cancelled,
    # Completed, OrderListChanged, ReadyForPickup
    type = Column(String(32), nullable=False)
    channel = Column(String(10), nullable=False, default="Both")

    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default="Pending")
    idempotency_key = Column(String(200), nullable=False, unique=True)

    # Frozen copy of what the message needs (order numbers, link, old times, ...)
    payload_snapshot = Column(JSONB, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    appointment = relationship("PickupAppointment", back_populates="notification_jobs", lazy="select")

    def __repr__(self):
        return (
            f"<AppointmentNotificationJob(id={self.id}, type='{self.type}', "
            f"status='{self.status}', scheduled_at={self.scheduled_at})>"
        )
