"""Worker heartbeat model."""

from sqlalchemy import Column, String, DateTime, JSON

from database import Base


class WorkerHeartbeat(Base):
    """Liveness record, one row per worker identity."""

    __tablename__ = "worker_heartbeats"

    worker_id = Column(String, primary_key=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    detail = Column(JSON, nullable=True)
