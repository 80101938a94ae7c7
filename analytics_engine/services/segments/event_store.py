"""
Event store backends for segment evaluation.

The segment engine never writes events; it only needs a bounded, filtered
read of a project's history. Two backends:

- SQLAlchemyEventStore: reads the ``events`` table. Name and time filters are
  pushed into SQL; each call opens its own session so conditions can be read
  concurrently.
- InMemoryEventStore: list-backed, for tests and offline evaluation.

Both read ``limit + 1`` rows and report ``truncated`` when the extra row
came back, so callers know a result was computed from a capped scan.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_engine.database import async_session_maker
from analytics_engine.exceptions import StoreUnavailableError
from analytics_engine.models.event import Event
from analytics_engine.services.segments.timeframe import TimeWindow, as_utc, restrict, utcnow

logger = logging.getLogger(__name__)

ProjectId = Union[uuid.UUID, str]


@dataclass(frozen=True)
class EventRecord:
    """The slice of an event the segment engine reads."""

    event_name: str
    user_id: Optional[str]
    anonymous_id: Optional[str]
    properties: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class IdentityRow:
    user_id: Optional[str]
    anonymous_id: Optional[str]


@dataclass(frozen=True)
class EventNameFilter:
    """event_name == name, or event_name != name when exclude is set."""

    name: str
    exclude: bool = False

    def matches(self, event_name: str) -> bool:
        return (event_name != self.name) if self.exclude else (event_name == self.name)


@dataclass
class StorePage:
    rows: List[Any]
    truncated: bool = False

    @classmethod
    def from_overfetch(cls, rows: List[Any], limit: int) -> "StorePage":
        if len(rows) > limit:
            return cls(rows=rows[:limit], truncated=True)
        return cls(rows=rows)


def _as_uuid(project_id: ProjectId) -> uuid.UUID:
    return project_id if isinstance(project_id, uuid.UUID) else uuid.UUID(str(project_id))


class EventStore(ABC):
    """Read-only access to a project's events."""

    @abstractmethod
    async def query_events(
        self,
        project_id: ProjectId,
        name_filter: Optional[EventNameFilter] = None,
        window: Optional[TimeWindow] = None,
        *,
        limit: int,
    ) -> StorePage:
        """
        Events of one project, newest first, at most ``limit`` of them.

        Returns:
            StorePage of EventRecord
        """
        pass

    @abstractmethod
    async def distinct_identities(self, project_id: ProjectId, *, limit: int) -> StorePage:
        """
        Distinct (user_id, anonymous_id) pairs seen in the project.

        Returns:
            StorePage of IdentityRow
        """
        pass


class SQLAlchemyEventStore(EventStore):
    """Event store over the ``events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_maker):
        self.session_factory = session_factory

    async def query_events(
        self,
        project_id: ProjectId,
        name_filter: Optional[EventNameFilter] = None,
        window: Optional[TimeWindow] = None,
        *,
        limit: int,
    ) -> StorePage:
        query = select(
            Event.event_name,
            Event.user_id,
            Event.anonymous_id,
            Event.properties,
            Event.created_at,
        ).where(Event.project_id == _as_uuid(project_id))

        if name_filter is not None:
            if name_filter.exclude:
                query = query.where(Event.event_name != name_filter.name)
            else:
                query = query.where(Event.event_name == name_filter.name)

        if window is not None:
            if window.start is not None:
                query = query.where(Event.created_at >= window.start)
            if window.end is not None:
                query = query.where(Event.created_at <= window.end)

        query = query.order_by(Event.created_at.desc()).limit(limit + 1)

        rows = await self._fetch(query, project_id)
        records = [
            EventRecord(
                event_name=row.event_name,
                user_id=row.user_id,
                anonymous_id=row.anonymous_id,
                properties=row.properties or {},
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]
        return StorePage.from_overfetch(records, limit)

    async def distinct_identities(self, project_id: ProjectId, *, limit: int) -> StorePage:
        query = (
            select(Event.user_id, Event.anonymous_id)
            .where(Event.project_id == _as_uuid(project_id))
            .distinct()
            .limit(limit + 1)
        )
        rows = await self._fetch(query, project_id)
        return StorePage.from_overfetch(
            [IdentityRow(user_id=row.user_id, anonymous_id=row.anonymous_id) for row in rows],
            limit,
        )

    async def _fetch(self, query, project_id: ProjectId) -> list:
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.all())
        except (SQLAlchemyError, OSError) as e:
            logger.exception("Event read failed for project %s", project_id)
            raise StoreUnavailableError("Event store", str(e)) from e


class InMemoryEventStore(EventStore):
    """List-backed event store with the same filtering semantics as the SQL one."""

    def __init__(self):
        self._events: Dict[str, List[EventRecord]] = defaultdict(list)

    def add(self, project_id: ProjectId, event: EventRecord) -> EventRecord:
        self._events[str(project_id)].append(event)
        return event

    def record(
        self,
        project_id: ProjectId,
        event_name: str,
        user_id: Optional[str] = None,
        anonymous_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> EventRecord:
        return self.add(
            project_id,
            EventRecord(
                event_name=event_name,
                user_id=user_id,
                anonymous_id=anonymous_id,
                properties=properties or {},
                created_at=as_utc(created_at) if created_at else utcnow(),
            ),
        )

    async def query_events(
        self,
        project_id: ProjectId,
        name_filter: Optional[EventNameFilter] = None,
        window: Optional[TimeWindow] = None,
        *,
        limit: int,
    ) -> StorePage:
        events = self._events.get(str(project_id), [])
        if name_filter is not None:
            events = [e for e in events if name_filter.matches(e.event_name)]
        events = restrict(events, window)
        events = sorted(events, key=lambda e: e.created_at, reverse=True)
        return StorePage.from_overfetch(events[:limit + 1], limit)

    async def distinct_identities(self, project_id: ProjectId, *, limit: int) -> StorePage:
        seen: Dict[tuple, IdentityRow] = {}
        for event in self._events.get(str(project_id), []):
            key = (event.user_id, event.anonymous_id)
            if key not in seen:
                seen[key] = IdentityRow(user_id=event.user_id, anonymous_id=event.anonymous_id)
                if len(seen) > limit:
                    break
        return StorePage.from_overfetch(list(seen.values()), limit)
