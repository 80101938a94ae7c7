"""
Segment Models

- Segment: audience definition (criteria JSON) plus the cached size of its
  last materialization
- SegmentUser: one row per identity in the last materialized snapshot
"""

import uuid

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, JSON, Index, PrimaryKeyConstraint
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from analytics_engine.database import Base


class Segment(Base):
    """
    Audience segment definition.

    Criteria are stored as a flat condition list with one combining operator:
    {
      "logic": "AND",
      "conditions": [
        {"id": "c1", "type": "event", "field": "purchase", "operator": "performed"},
        {"id": "c2", "type": "property", "field": "plan", "operator": "equals",
         "value": "pro", "timeframe": {"type": "last_n_days", "value": 30}}
      ]
    }

    cached_size, last_calculated_at and is_approximate are only written after a
    successful materialization.
    """
    __tablename__ = "segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)

    # 'static' (snapshot) or 'dynamic' (recalculated on demand)
    segment_type = Column(String(20), default='dynamic', nullable=False, index=True)

    criteria = Column(JSON, nullable=False, default=lambda: {"conditions": [], "logic": "AND"})

    # Materialization bookkeeping
    cached_size = Column(Integer, default=0, nullable=False)
    last_calculated_at = Column(DateTime(timezone=True))
    is_approximate = Column(Boolean, default=False, nullable=False)  # a condition hit the event scan cap

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    project = relationship("Project", back_populates="segments")
    users = relationship("SegmentUser", back_populates="segment", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Segment id={self.id} name='{self.name}' type={self.segment_type} size={self.cached_size}>"


class SegmentUser(Base):
    """
    Materialized segment membership.

    For anonymous identities user_id repeats the anonymous id, so consumers
    can always read user_id; ``identity`` keeps the tagged key unique.
    """
    __tablename__ = "segment_users"

    segment_id = Column(UUID(as_uuid=True), ForeignKey("segments.id", ondelete="CASCADE"), nullable=False)
    identity = Column(String(300), nullable=False)  # "user:<id>" | "anon:<id>"
    user_id = Column(String(255), nullable=False)
    anonymous_id = Column(String(255))
    added_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    segment = relationship("Segment", back_populates="users")

    __table_args__ = (
        PrimaryKeyConstraint('segment_id', 'identity'),
        Index('ix_segment_users_segment_added', 'segment_id', 'added_at'),
        Index('ix_segment_users_user_id', 'user_id'),
    )

    def __repr__(self):
        return f"<SegmentUser segment_id={self.segment_id} identity={self.identity}>"
