"""UserProfile model holding the account credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserProfile(Base):
    """Credit balance row, one per account.

    Only ``services.credits`` mutates ``credits`` and ``total_purchased``.
    """

    __tablename__ = "user_profiles"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_profiles_credits_non_negative"),
        CheckConstraint("total_purchased >= 0", name="ck_user_profiles_total_purchased_non_negative"),
    )

    id = Column(String, ForeignKey("users.id"), primary_key=True)
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    total_purchased = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="profile")
