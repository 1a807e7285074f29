"""Purchase model: append-only record of credit purchases for reconciliation."""

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Purchase(Base):
    """Credit purchase keyed by the external payment reference."""

    __tablename__ = "purchases"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'succeeded', 'failed')", name="ck_purchases_status"),
        CheckConstraint("credits > 0", name="ck_purchases_credits_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    payment_reference = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)  # minor currency units
    credits = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending", server_default="pending")
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="purchases")
