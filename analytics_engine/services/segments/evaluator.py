"""
Segment evaluator: criteria -> set of member identities.

All conditions of a criteria document are evaluated concurrently, one store
read each, and merged with the criteria's logic operator. Criteria without
conditions match every identity that has produced an event in the project.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Union

from pydantic import ValidationError

from analytics_engine.config import settings
from analytics_engine.exceptions import InvalidCriteriaError
from analytics_engine.schemas.segment import SegmentCriteria
from analytics_engine.services.segments.combinator import combine
from analytics_engine.services.segments.condition_evaluator import ConditionEvaluator
from analytics_engine.services.segments.event_store import EventStore, ProjectId
from analytics_engine.services.segments.identity import Identity, collect_identities

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    identities: Set[Identity] = field(default_factory=set)
    is_approximate: bool = False

    @property
    def size(self) -> int:
        return len(self.identities)


def parse_criteria(criteria: Union[SegmentCriteria, Dict[str, Any], None]) -> SegmentCriteria:
    """Validate a stored criteria document. None means "no conditions"."""
    if isinstance(criteria, SegmentCriteria):
        return criteria
    try:
        return SegmentCriteria.model_validate(criteria or {})
    except ValidationError as e:
        logger.warning("Rejected segment criteria: %s", e.error_count())
        raise InvalidCriteriaError.from_validation_error(e) from e


class SegmentEvaluator:
    """Computes segment membership from criteria without persisting anything."""

    def __init__(
        self,
        event_store: EventStore,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        scan_limit: Optional[int] = None,
    ):
        self.event_store = event_store
        self.scan_limit = scan_limit or settings.SEGMENT_EVENT_SCAN_LIMIT
        self.conditions = condition_evaluator or ConditionEvaluator(event_store, scan_limit=self.scan_limit)

    async def evaluate(
        self,
        project_id: ProjectId,
        criteria: Union[SegmentCriteria, Dict[str, Any], None],
    ) -> EvaluationResult:
        criteria = parse_criteria(criteria)

        if not criteria.conditions:
            page = await self.event_store.distinct_identities(project_id, limit=self.scan_limit)
            if page.truncated:
                logger.warning(
                    "Project %s has more than %d identities; empty-criteria segment is approximate",
                    project_id, self.scan_limit,
                )
            return EvaluationResult(identities=collect_identities(page.rows), is_approximate=page.truncated)

        tasks = [
            asyncio.create_task(self.conditions.evaluate(project_id, condition))
            for condition in criteria.conditions
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # One failed condition fails the segment; stop the others
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return EvaluationResult(
            identities=combine([r.identities for r in results], criteria.logic),
            is_approximate=any(r.truncated for r in results),
        )
