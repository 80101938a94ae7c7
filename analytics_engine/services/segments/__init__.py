# Segment membership engine
from analytics_engine.services.segments.identity import Identity, resolve_identity
from analytics_engine.services.segments.timeframe import TimeWindow, resolve_window, restrict
from analytics_engine.services.segments.event_store import (
    EventNameFilter,
    EventRecord,
    EventStore,
    InMemoryEventStore,
    SQLAlchemyEventStore,
)
from analytics_engine.services.segments.combinator import combine
from analytics_engine.services.segments.condition_evaluator import ConditionEvaluator, ConditionResult
from analytics_engine.services.segments.evaluator import EvaluationResult, SegmentEvaluator, parse_criteria
from analytics_engine.services.segments.membership import MaterializationResult, MembershipMaterializer
from analytics_engine.services.segments.segment_service import SegmentService

__all__ = [
    "Identity",
    "resolve_identity",
    "TimeWindow",
    "resolve_window",
    "restrict",
    "EventNameFilter",
    "EventRecord",
    "EventStore",
    "InMemoryEventStore",
    "SQLAlchemyEventStore",
    "combine",
    "ConditionEvaluator",
    "ConditionResult",
    "EvaluationResult",
    "SegmentEvaluator",
    "parse_criteria",
    "MaterializationResult",
    "MembershipMaterializer",
    "SegmentService",
]
