"""
Event model.

Append-only analytics events. The segment engine only ever reads this table;
ingestion writes it. Every row carries at least one identity: ``anonymous_id``
is always set by the SDK, ``user_id`` once the app has identified the user.
"""

from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from analytics_engine.database import Base


class Event(Base):
    __tablename__ = "events"

    id = Column(String(255), primary_key=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    # Event data
    event_name = Column(String(255), nullable=False)
    properties = Column(JSON)
    timestamp = Column(BigInteger)  # client-side epoch millis
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # User identification
    user_id = Column(String(255))
    anonymous_id = Column(String(255), nullable=False)
    session_id = Column(String(255))

    # Relationships
    project = relationship("Project", back_populates="events")

    __table_args__ = (
        Index('ix_events_project_created_at', 'project_id', 'created_at'),
        Index('ix_events_project_event_name', 'project_id', 'event_name'),
        Index('ix_events_user_id', 'user_id'),
        Index('ix_events_anonymous_id', 'anonymous_id'),
    )

    def __repr__(self):
        return f"<Event id={self.id} name='{self.event_name}' user_id={self.user_id} anonymous_id={self.anonymous_id}>"
