"""Generated image asset model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class AiAsset(Base):
    """Image produced by a succeeded AI job; written once."""

    __tablename__ = "ai_assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, ForeignKey("ai_jobs.id"), nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, default="image")
    storage_bucket = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("AiJob", back_populates="assets")
