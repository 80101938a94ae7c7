from analytics_engine.models.project import Project
from analytics_engine.models.event import Event
from analytics_engine.models.segment import Segment, SegmentUser

__all__ = [
    "Project",
    "Event",
    "Segment",
    "SegmentUser",
]
