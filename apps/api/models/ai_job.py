"""AI image generation job model."""

from sqlalchemy import Column, String, DateTime, Integer, JSON, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class AiJob(Base):
    """Queued request to generate one image from a prompt."""

    __tablename__ = "ai_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False)
    prompt = Column(Text, nullable=False)
    negative_prompt = Column(Text, nullable=True)
    params = Column(JSON, nullable=True)  # size / width / height / steps / guidance ...
    status = Column(String, nullable=False, default="queued", index=True)  # queued, running, succeeded, failed, canceled
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error = Column(String, nullable=True)
    provider_request_id = Column(String, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True, index=True)
    locked_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    assets = relationship("AiAsset", back_populates="job")
