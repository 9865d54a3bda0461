"""Pending feed join request model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
import uuid

from database import Base


class FeedJoinRequest(Base):
    """Moderated opt-in request awaiting approval."""

    __tablename__ = "feed_join_requests"
    __table_args__ = (UniqueConstraint("feed_id", "requester_did", name="uq_feed_join_requests_feed_requester"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    feed_id = Column(String, ForeignKey("feeds.id"), nullable=False, index=True)
    requester_did = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    source_uri = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
