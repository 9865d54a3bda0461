"""Feed definition model."""

from sqlalchemy import Boolean, Column, String, DateTime, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Feed(Base):
    """Custom feed served by the feed generator, routed by slug."""

    __tablename__ = "feeds"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    slug = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True, index=True)
    source_strategy = Column(String, nullable=False, default="curated")  # curated, opt_in
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    rules = relationship("FeedRule", back_populates="feed", uselist=False, cascade="all, delete-orphan")
    sources = relationship("FeedSource", back_populates="feed", cascade="all, delete-orphan")
