from sqlalchemy import Column, Index, String, Boolean, DateTime, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from willcall.database import Base


class ErpOrderSummary(Base):
    __tablename__ = "erp_order_summaries"
    __table_args__ = (
        UniqueConstraint("baid", "order_nbr", name="uq_erp_order_summaries_baid_nbr"),
        Index("ix_erp_order_summaries_baid_requested", "baid", "requested_on"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    baid = Column(String(50), nullable=False)
    order_nbr = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False)
    location_id = Column(String(50), nullable=True)
    requested_on = Column(DateTime(timezone=True), nullable=False)
    ship_via = Column(String(100), nullable=True)
    job_name = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    buyer_group = Column(String(100), nullable=True)
    note_id = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ErpOrderSummary(baid='{self.baid}', order_nbr='{self.order_nbr}', status='{self.status}')>"
