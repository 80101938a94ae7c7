"""
Membership materializer.

Contract A (calculate_segment_size) replaces a segment's membership snapshot:
the old rows are deleted and the new identities inserted in batches, all in
one transaction, so readers see either the previous snapshot or the new one.
Recalculations of the same segment are serialized by an in-process lock and,
on PostgreSQL, by a row lock on the segment.

Contract B (preview_segment_size) runs the identical evaluation and returns
only the count.
"""

import asyncio
import logging
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_engine.config import settings
from analytics_engine.database import async_session_maker
from analytics_engine.exceptions import (
    AnalyticsError,
    NotFoundError,
    PartialWriteFailureError,
    StoreUnavailableError,
)
from analytics_engine.models.project import Project
from analytics_engine.models.segment import Segment, SegmentUser
from analytics_engine.schemas.segment import SegmentCriteria
from analytics_engine.services.segments.evaluator import EvaluationResult, SegmentEvaluator
from analytics_engine.services.segments.event_store import SQLAlchemyEventStore
from analytics_engine.services.segments.timeframe import utcnow

logger = logging.getLogger(__name__)

SegmentId = Union[uuid.UUID, str]
Criteria = Union[SegmentCriteria, Dict[str, Any], None]

_segment_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _segment_lock(segment_id: uuid.UUID) -> asyncio.Lock:
    key = str(segment_id)
    lock = _segment_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _segment_locks[key] = lock
    return lock


def _resource_id(value: Union[uuid.UUID, str], resource: str) -> uuid.UUID:
    """Ids that are not UUIDs cannot name an existing row."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(resource, str(value))


@dataclass
class MaterializationResult:
    segment_id: uuid.UUID
    size: int
    is_approximate: bool = False
    elapsed_ms: float = 0.0


class MembershipMaterializer:
    """Evaluates criteria and persists, or previews, segment membership."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        evaluator: Optional[SegmentEvaluator] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.evaluator = evaluator or SegmentEvaluator(SQLAlchemyEventStore(session_factory))
        self.batch_size = batch_size or settings.SEGMENT_MEMBERSHIP_BATCH_SIZE

    async def calculate_segment_size(self, segment_id: SegmentId, criteria: Criteria) -> int:
        """Replace the segment's snapshot and return its new size."""
        result = await self.materialize(segment_id, criteria)
        return result.size

    async def materialize(self, segment_id: SegmentId, criteria: Criteria) -> MaterializationResult:
        segment_id = _resource_id(segment_id, "Segment")
        started = time.monotonic()

        async with _segment_lock(segment_id):
            # Conditions are read before the replace transaction opens
            project_id = await self._segment_project(segment_id)
            evaluation = await self.evaluator.evaluate(project_id, criteria)

            async with self.session_factory() as session:
                writing = False
                try:
                    async with session.begin():
                        result = await session.execute(
                            select(Segment.id)
                            .where(Segment.id == segment_id)
                            .with_for_update()
                        )
                        if result.scalar_one_or_none() is None:
                            raise NotFoundError("Segment", str(segment_id))

                        writing = True
                        await session.execute(
                            delete(SegmentUser).where(SegmentUser.segment_id == segment_id)
                        )
                        rows = self._membership_rows(segment_id, evaluation)
                        for start in range(0, len(rows), self.batch_size):
                            await session.execute(insert(SegmentUser), rows[start:start + self.batch_size])
                except AnalyticsError:
                    raise
                except (SQLAlchemyError, OSError) as e:
                    if writing:
                        logger.exception("Membership replace for segment %s rolled back", segment_id)
                        raise PartialWriteFailureError(str(segment_id), str(e)) from e
                    logger.exception("Could not read segment %s", segment_id)
                    raise StoreUnavailableError("Segment store", str(e)) from e

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Materialized segment %s: %d members%s in %.0fms",
            segment_id, evaluation.size, " (approximate)" if evaluation.is_approximate else "", elapsed_ms,
        )
        return MaterializationResult(
            segment_id=segment_id,
            size=evaluation.size,
            is_approximate=evaluation.is_approximate,
            elapsed_ms=elapsed_ms,
        )

    async def _segment_project(self, segment_id: uuid.UUID) -> uuid.UUID:
        async with self.session_factory() as session:
            try:
                project_id = await session.scalar(
                    select(Segment.project_id).where(Segment.id == segment_id)
                )
            except (SQLAlchemyError, OSError) as e:
                logger.exception("Could not read segment %s", segment_id)
                raise StoreUnavailableError("Segment store", str(e)) from e
        if project_id is None:
            raise NotFoundError("Segment", str(segment_id))
        return project_id

    def _membership_rows(self, segment_id: uuid.UUID, evaluation: EvaluationResult) -> List[dict]:
        added_at = utcnow()
        return [
            {"segment_id": segment_id, "added_at": added_at, **identity.membership_columns()}
            for identity in sorted(evaluation.identities)
        ]

    async def preview(self, project_id: Union[uuid.UUID, str], criteria: Criteria) -> EvaluationResult:
        project_id = _resource_id(project_id, "Project")
        async with self.session_factory() as session:
            try:
                found = await session.scalar(select(Project.id).where(Project.id == project_id))
            except (SQLAlchemyError, OSError) as e:
                logger.exception("Could not read project %s", project_id)
                raise StoreUnavailableError("Project store", str(e)) from e
        if found is None:
            raise NotFoundError("Project", str(project_id))
        return await self.evaluator.evaluate(project_id, criteria)

    async def preview_segment_size(self, project_id: Union[uuid.UUID, str], criteria: Criteria) -> int:
        """Size the criteria would produce for the project; nothing is written."""
        result = await self.preview(project_id, criteria)
        return result.size

    async def get_segment_users(
        self,
        segment_id: SegmentId,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SegmentUser]:
        """Page through the last materialized snapshot, newest first."""
        segment_id = _resource_id(segment_id, "Segment")
        limit = limit or settings.SEGMENT_USERS_DEFAULT_LIMIT
        async with self.session_factory() as session:
            try:
                exists = await session.scalar(select(Segment.id).where(Segment.id == segment_id))
                if exists is None:
                    raise NotFoundError("Segment", str(segment_id))
                result = await session.execute(
                    select(SegmentUser)
                    .where(SegmentUser.segment_id == segment_id)
                    .order_by(SegmentUser.added_at.desc(), SegmentUser.identity)
                    .limit(limit)
                    .offset(max(offset, 0))
                )
                return list(result.scalars().all())
            except (SQLAlchemyError, OSError) as e:
                logger.exception("Could not read members of segment %s", segment_id)
                raise StoreUnavailableError("Segment store", str(e)) from e
