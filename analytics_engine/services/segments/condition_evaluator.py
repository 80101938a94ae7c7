"""
Condition evaluator: one condition -> set of matching identities.

event conditions are answered entirely by the store (name filter pushed down).
property conditions read the timeframe-restricted events of the project and
test ``properties[field]`` in memory.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Set

from analytics_engine.config import settings
from analytics_engine.exceptions import InvalidCriteriaError
from analytics_engine.schemas.segment import ConditionOperator, ConditionType, SegmentCondition
from analytics_engine.services.segments.event_store import EventNameFilter, EventStore, ProjectId
from analytics_engine.services.segments.identity import Identity, collect_identities
from analytics_engine.services.segments.timeframe import resolve_window, utcnow

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# Distinguishes an absent property from one explicitly set to null
MISSING = _Missing()


@dataclass
class ConditionResult:
    condition_id: str
    identities: Set[Identity] = field(default_factory=set)
    truncated: bool = False  # the event scan hit its cap


def _strict_equals(left: Any, right: Any) -> bool:
    # bool is an int subclass; True must not equal 1
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _string_form(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _to_number(value: Any) -> Optional[float]:
    if value is None or value is MISSING:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not value.strip():
            return 0.0
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _property_value(properties: Any, field: str) -> Any:
    """A payload that is not an object has no properties."""
    if not isinstance(properties, dict):
        return MISSING
    return properties.get(field, MISSING)


def _contains(prop: Any, value: Any) -> bool:
    if prop is MISSING or prop is None:
        return False
    return _string_form(value) in _string_form(prop)


def property_matches(operator: ConditionOperator, prop: Any, value: Any) -> bool:
    """
    Test one property value against a condition.

    Args:
        operator: property operator
        prop: the event's property value, or MISSING when the key is absent
        value: the condition's comparison value
    """
    if operator == ConditionOperator.EQUALS:
        return prop is not MISSING and _strict_equals(prop, value)
    elif operator == ConditionOperator.NOT_EQUALS:
        return prop is MISSING or not _strict_equals(prop, value)
    elif operator == ConditionOperator.CONTAINS:
        return _contains(prop, value)
    elif operator == ConditionOperator.NOT_CONTAINS:
        return not _contains(prop, value)
    elif operator == ConditionOperator.EXISTS:
        return prop is not MISSING and prop is not None
    elif operator == ConditionOperator.NOT_EXISTS:
        return prop is MISSING or prop is None
    elif operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _to_number(prop), _to_number(value)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right

    raise InvalidCriteriaError(f"operator '{operator.value}' is not supported for property conditions")


class ConditionEvaluator:
    """Evaluates single conditions against an event store."""

    def __init__(
        self,
        event_store: EventStore,
        scan_limit: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.event_store = event_store
        self.scan_limit = scan_limit or settings.SEGMENT_EVENT_SCAN_LIMIT
        self.clock = clock

    async def evaluate(self, project_id: ProjectId, condition: SegmentCondition) -> ConditionResult:
        window = resolve_window(condition.timeframe, self.clock())

        match (condition.type, condition.operator):
            case (ConditionType.EVENT, ConditionOperator.PERFORMED):
                name_filter = EventNameFilter(condition.field)
            case (ConditionType.EVENT, ConditionOperator.NOT_PERFORMED):
                name_filter = EventNameFilter(condition.field, exclude=True)
            case (ConditionType.PROPERTY, operator) if operator not in (
                ConditionOperator.BETWEEN, ConditionOperator.IN, ConditionOperator.NOT_IN
            ):
                name_filter = None
            case (condition_type, operator):
                raise InvalidCriteriaError(
                    f"condition {condition.id}: operator '{getattr(operator, 'value', operator)}' "
                    f"is not supported for {getattr(condition_type, 'value', condition_type)} conditions",
                    errors=[{"field": f"conditions.{condition.id}", "message": "unsupported condition"}],
                )

        page = await self.event_store.query_events(
            project_id, name_filter=name_filter, window=window, limit=self.scan_limit
        )
        events = page.rows
        if condition.type == ConditionType.PROPERTY:
            events = [
                event for event in events
                if property_matches(
                    condition.operator,
                    _property_value(event.properties, condition.field),
                    condition.value,
                )
            ]

        if page.truncated:
            logger.warning(
                "Condition %s (%s %s) hit the event scan limit of %d; result is approximate",
                condition.id, condition.type.value, condition.field, self.scan_limit,
            )

        return ConditionResult(
            condition_id=condition.id,
            identities=collect_identities(events),
            truncated=page.truncated,
        )
