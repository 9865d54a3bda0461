"""Connected network account model."""

from sqlalchemy import Column, String, DateTime, Text, UniqueConstraint
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Connected account with its encrypted network session."""

    __tablename__ = "bsky_accounts"
    __table_args__ = (UniqueConstraint("user_id", "did", name="uq_bsky_accounts_user_did"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    did = Column(String, nullable=False, index=True)
    handle = Column(String, nullable=False)
    service = Column(String, nullable=False, default="https://bsky.social")
    access_jwt_encrypted = Column(Text, nullable=True)
    refresh_jwt_encrypted = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
