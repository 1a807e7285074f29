"""Adventure model: the work-in-progress document and its regeneration counters."""

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


ADVENTURE_STATES = ("draft", "ready", "archived")


class Adventure(Base):
    """Generated adventure owned by a user."""

    __tablename__ = "adventures"
    __table_args__ = (
        CheckConstraint("state IN ('draft', 'ready', 'archived')", name="ck_adventures_state"),
        CheckConstraint(
            "scaffold_regenerations_used >= 0",
            name="ck_adventures_scaffold_regenerations_non_negative",
        ),
        CheckConstraint(
            "expansion_regenerations_used >= 0",
            name="ck_adventures_expansion_regenerations_non_negative",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    frame = Column(String, nullable=False)
    focus = Column(String, nullable=False)
    state = Column(String, nullable=False, default="draft", server_default="draft", index=True)
    config_json = Column(JSON, nullable=True)
    movements_json = Column(JSON, nullable=True)  # list of movement dicts
    scaffold_regenerations_used = Column(Integer, nullable=False, default=0, server_default="0")
    expansion_regenerations_used = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="adventures")
