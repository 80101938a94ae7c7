# Services module
from analytics_engine.services.segments import (
    MembershipMaterializer,
    SegmentEvaluator,
    SegmentService,
)

__all__ = [
    "MembershipMaterializer",
    "SegmentEvaluator",
    "SegmentService",
]
