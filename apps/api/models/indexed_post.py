"""Indexed network post model."""

from sqlalchemy import Column, String, DateTime, JSON, Text
from sqlalchemy.sql import func

from database import Base


class IndexedPost(Base):
    """Denormalized searchable copy of one network post, keyed by uri."""

    __tablename__ = "indexed_posts"

    uri = Column(String, primary_key=True)
    cid = Column(String, nullable=True)
    author_did = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    lang = Column(String, nullable=True, index=True)
    raw = Column(JSON, nullable=True)
    indexed_at = Column(DateTime(timezone=True), server_default=func.now())
