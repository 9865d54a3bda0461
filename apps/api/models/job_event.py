"""Job event (audit trail) model."""

from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
import uuid

from database import Base


class JobEvent(Base):
    """Append-only state transition record for a job."""

    __tablename__ = "job_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    job_kind = Column(String, nullable=True, index=True)  # scheduled_post, ai_image
    subject_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
