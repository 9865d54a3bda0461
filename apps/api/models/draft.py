"""Draft model."""

from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class Draft(Base):
    """Post text composed by a user; read-only for the worker."""

    __tablename__ = "drafts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
