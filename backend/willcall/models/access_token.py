from sqlalchemy import Column, Index, String, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from willcall.database import Base


class AppointmentAccessToken(Base):
    __tablename__ = "appointment_access_tokens"
    __table_args__ = (
        Index("ix_appointment_access_tokens_active", "appointment_id", "revoked_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("pickup_appointments.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(128), nullable=False, unique=True)
    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<AppointmentAccessToken(appointment_id={self.appointment_id}, expires_at={self.expires_at})>"
