"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .event import (
    EventFactory,
    AnonymousEventFactory,
    IdentifiedEventFactory,
    PurchaseEventFactory,
)
from .segment import (
    SegmentFactory,
    StaticSegmentFactory,
    condition,
    criteria,
)

__all__ = [
    # Events
    "EventFactory",
    "AnonymousEventFactory",
    "IdentifiedEventFactory",
    "PurchaseEventFactory",
    # Segments
    "SegmentFactory",
    "StaticSegmentFactory",
    "condition",
    "criteria",
]
