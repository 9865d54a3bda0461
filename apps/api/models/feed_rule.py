"""Feed rule set model."""

from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class FeedRule(Base):
    """Keyword, language and opt-in rules for one feed."""

    __tablename__ = "feed_rules"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    feed_id = Column(String, ForeignKey("feeds.id"), nullable=False, unique=True, index=True)
    include_keywords = Column(JSON, nullable=False, default=list)
    exclude_keywords = Column(JSON, nullable=False, default=list)
    include_mode = Column(String, nullable=False, default="any")  # any, all
    case_insensitive = Column(Boolean, nullable=False, default=True)
    lang = Column(String, nullable=True)
    enrollment_tag = Column(String, nullable=True)
    enrollment_mode = Column(String, nullable=False, default="public")  # public, moderated
    submission_tag = Column(String, nullable=True)
    submission_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    feed = relationship("Feed", back_populates="rules")
