from sqlalchemy import (
    Column, Index, String, Integer, Boolean, DateTime, ForeignKey, CheckConstraint,
    UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from willcall.database import Base


class PickupAppointment(Base):
    __tablename__ = "pickup_appointments"
    __table_args__ = (
        Index("ix_pickup_appointments_status_end", "status", "end_at"),
        Index("ix_pickup_appointments_location_start", "location_id", "start_at"),
        CheckConstraint(
            "status IN ('Scheduled', 'Confirmed', 'InProgress', 'Ready', 'NoShow', 'Completed', 'Cancelled')",
            name="ck_pickup_appointments_status",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    baid = Column(String(50), nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    location_id = Column(String(50), nullable=False)
    status = Column(String(20), default="Scheduled", nullable=False)

    customer_first_name = Column(String(100), nullable=True)
    customer_last_name = Column(String(100), nullable=True)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(30), nullable=True)

    # SMS consent; sms_opt_in_phone overrides customer_phone as destination
    sms_opt_in = Column(Boolean, default=False, nullable=False)
    sms_opt_in_at = Column(DateTime(timezone=True), nullable=True)
    sms_opt_in_source = Column(String(50), nullable=True)
    sms_opt_in_phone = Column(String(30), nullable=True)
    sms_opt_out_at = Column(DateTime(timezone=True), nullable=True)
    sms_opt_out_reason = Column(String(255), nullable=True)
    # First SMS carries the STOP line; stamped once
    sms_first_sent_at = Column(DateTime(timezone=True), nullable=True)

    # Email consent; email_opt_in_email overrides customer_email as destination
    email_opt_in = Column(Boolean, default=False, nullable=False)
    email_opt_in_at = Column(DateTime(timezone=True), nullable=True)
    email_opt_in_source = Column(String(50), nullable=True)
    email_opt_in_email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    orders = relationship(
        "PickupAppointmentOrder",
        back_populates="appointment",
        order_by="PickupAppointmentOrder.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    notification_jobs = relationship("AppointmentNotificationJob", back_populates="appointment", lazy="select")

    @property
    def order_nbrs(self) -> list[str]:
        return [o.order_nbr for o in self.orders or []]

    def __repr__(self):
        return f"<PickupAppointment(id={self.id}, start_at={self.start_at}, status='{self.status}')>"


class PickupAppointmentOrder(Base):
    __tablename__ = "pickup_appointment_orders"
    __table_args__ = (
        UniqueConstraint("appointment_id", "order_nbr", name="uq_pickup_appointment_orders_nbr"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("pickup_appointments.id", ondelete="CASCADE"), nullable=False)
    order_nbr = Column(String(50), nullable=False)
    position = Column(Integer, default=0, nullable=False)

    appointment = relationship("PickupAppointment", back_populates="orders")

    def __repr__(self):
        return f"<PickupAppointmentOrder(appointment_id={self.appointment_id}, order_nbr='{self.order_nbr}')>"
