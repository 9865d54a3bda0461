"""Feed source account model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class FeedSource(Base):
    """Author account whose posts a feed re-serves."""

    __tablename__ = "feed_sources"
    __table_args__ = (UniqueConstraint("feed_id", "account_did", name="uq_feed_sources_feed_account"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    feed_id = Column(String, ForeignKey("feeds.id"), nullable=False, index=True)
    source_type = Column(String, nullable=False, default="account_list")
    account_did = Column(String, nullable=True, index=True)
    added_via = Column(String, nullable=False, default="curated")  # curated, opt_in
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    feed = relationship("Feed", back_populates="sources")
