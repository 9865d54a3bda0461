"""Scheduled post model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.sql import func
import uuid

from database import Base


class ScheduledPost(Base):
    """One pending/attempted publish of a draft to one connected account."""

    __tablename__ = "scheduled_posts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    account_did = Column(String, nullable=True, index=True)
    draft_id = Column(String, ForeignKey("drafts.id"), nullable=False, index=True)
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="queued", index=True)  # queued, posting, posted, failed, canceled
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(String, nullable=True)
    posted_uri = Column(String, nullable=True)
    posted_cid = Column(String, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True, index=True)
    locked_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
