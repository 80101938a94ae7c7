"""
Segment service.

CRUD over segment definitions plus the operations that tie a definition to
its materialized membership:

- create/update recalculate when criteria are set or changed
- recalculate runs the materializer, then records the new size
- users/export read the last snapshot
- preview sizes unsaved criteria
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import ValidationError

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_engine.config import settings
from analytics_engine.exceptions import NotFoundError
from analytics_engine.models.project import Project
from analytics_engine.models.segment import Segment, SegmentUser
from analytics_engine.schemas.segment import (
    SegmentCreate,
    SegmentCriteria,
    SegmentExportResponse,
    SegmentPreviewResponse,
    SegmentUpdate,
    SegmentUserResponse,
)
from analytics_engine.services.segments.membership import MembershipMaterializer

logger = logging.getLogger(__name__)

SegmentId = Union[uuid.UUID, str]


class SegmentService:
    """Segment definitions and their materialized membership."""

    def __init__(self, db: AsyncSession, materializer: Optional[MembershipMaterializer] = None):
        """
        Args:
            db: session used for segment definitions
            materializer: membership engine; by default one whose sessions
                share db's engine
        """
        self.db = db
        self.materializer = materializer or MembershipMaterializer(
            async_sessionmaker(db.bind, class_=AsyncSession, expire_on_commit=False)
        )

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    async def create_segment(self, data: SegmentCreate) -> Segment:
        """Save a segment and compute its initial membership."""
        project = await self.db.get(Project, data.project_id)
        if project is None:
            raise NotFoundError("Project", str(data.project_id))

        segment = Segment(
            project_id=data.project_id,
            name=data.name,
            description=data.description,
            segment_type=data.segment_type.value,
            criteria=data.criteria.model_dump(mode="json"),
            is_active=data.is_active,
        )
        self.db.add(segment)
        await self.db.commit()
        await self.db.refresh(segment)
        logger.info("Created segment %s '%s' in project %s", segment.id, segment.name, segment.project_id)

        return await self.recalculate_segment(segment.id)

    async def get_segment(self, segment_id: SegmentId) -> Segment:
        try:
            key = _as_uuid(segment_id)
        except ValueError:
            raise NotFoundError("Segment", str(segment_id))
        segment = await self.db.get(Segment, key)
        if segment is None:
            raise NotFoundError("Segment", str(segment_id))
        return segment

    async def list_segments(self, project_id: Optional[Union[uuid.UUID, str]] = None) -> List[Segment]:
        """Segments, newest first, optionally for one project."""
        query = select(Segment)
        if project_id is not None:
            query = query.where(Segment.project_id == _as_uuid(project_id))
        query = query.order_by(Segment.created_at.desc(), Segment.name)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_segment(self, segment_id: SegmentId, data: SegmentUpdate) -> Segment:
        """
        Apply the fields set on data.

        New criteria are materialized first; criteria, cached size and the
        other changes are then committed together, so a failed recalculation
        leaves the segment exactly as it was.
        """
        segment = await self.get_segment(segment_id)
        changes = data.model_dump(exclude_unset=True, mode="json")

        if "criteria" in changes:
            if changes["criteria"] is None:
                changes["criteria"] = SegmentCriteria().model_dump(mode="json")
            if _criteria_key(changes["criteria"]) == _criteria_key(segment.criteria):
                # Same conditions; keep the stored condition ids
                del changes["criteria"]

        result = None
        if "criteria" in changes:
            result = await self.materializer.materialize(segment.id, changes["criteria"])

        for key, value in changes.items():
            if value is None and key in ("name", "segment_type", "is_active"):
                continue  # non-nullable columns
            setattr(segment, key, value)

        if result is not None:
            segment.cached_size = result.size
            segment.is_approximate = result.is_approximate
            segment.last_calculated_at = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(segment)
        return segment

    async def delete_segment(self, segment_id: SegmentId) -> None:
        segment = await self.get_segment(segment_id)
        await self.db.execute(delete(SegmentUser).where(SegmentUser.segment_id == segment.id))
        await self.db.delete(segment)
        await self.db.commit()
        logger.info("Deleted segment %s", segment.id)

    # =========================================================================
    # MEMBERSHIP
    # =========================================================================

    async def recalculate_segment(self, segment_id: SegmentId) -> Segment:
        """Rebuild the snapshot from the stored criteria, then record its size."""
        segment = await self.get_segment(segment_id)
        result = await self.materializer.materialize(segment.id, segment.criteria)
        return await self.update_segment_size(segment.id, result.size, result.is_approximate)

    async def update_segment_size(
        self, segment_id: SegmentId, size: int, is_approximate: bool = False
    ) -> Segment:
        segment = await self.get_segment(segment_id)
        segment.cached_size = size
        segment.is_approximate = is_approximate
        segment.last_calculated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(segment)
        return segment

    async def get_segment_users(
        self, segment_id: SegmentId, limit: Optional[int] = None, offset: int = 0
    ) -> List[SegmentUserResponse]:
        rows = await self.materializer.get_segment_users(
            segment_id, limit=limit or settings.SEGMENT_USERS_DEFAULT_LIMIT, offset=offset
        )
        return [SegmentUserResponse.model_validate(row) for row in rows]

    async def export_segment(self, segment_id: SegmentId) -> SegmentExportResponse:
        segment = await self.get_segment(segment_id)
        users = await self.get_segment_users(segment.id, limit=settings.SEGMENT_EXPORT_LIMIT)
        return SegmentExportResponse(
            id=segment.id,
            name=segment.name,
            criteria=segment.criteria,
            users=users,
            exported_at=datetime.now(timezone.utc),
        )

    async def preview_segment(
        self, project_id: Union[uuid.UUID, str], criteria: Union[SegmentCriteria, dict]
    ) -> SegmentPreviewResponse:
        """Size unsaved criteria against a project."""
        result = await self.materializer.preview(project_id, criteria)
        return SegmentPreviewResponse(
            project_id=_as_uuid(project_id),
            preview_size=result.size,
            is_approximate=result.is_approximate,
        )


def _as_uuid(value: Union[uuid.UUID, str]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _criteria_key(criteria: Any) -> Optional[dict]:
    """Criteria compared without condition ids, which are generated when omitted."""
    try:
        parsed = SegmentCriteria.model_validate(criteria or {})
    except ValidationError:
        return None
    return parsed.model_dump(mode="json", exclude={"conditions": {"__all__": {"id"}}})
