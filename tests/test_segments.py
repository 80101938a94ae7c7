"""
Tests for segment membership

Materialization and preview against the SQL event store, snapshot replace
semantics, and the segment service.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from analytics_engine.exceptions import (
    InvalidCriteriaError,
    NotFoundError,
    PartialWriteFailureError,
)
from analytics_engine.models import Segment, SegmentUser
from analytics_engine.schemas.segment import SegmentCreate, SegmentCriteria, SegmentUpdate
from analytics_engine.services.segments import MembershipMaterializer

from tests.factories import (
    AnonymousEventFactory,
    EventFactory,
    IdentifiedEventFactory,
    SegmentFactory,
    condition,
    criteria,
)

T = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================
# Fixtures
# ============================================


@pytest_asyncio.fixture
async def scenario_events(add_events):
    """u1 purchased and viewed; anonymous a1 purchased. All at T."""
    await add_events(
        EventFactory(user_id="u1", anonymous_id="d1", event_name="purchase", created_at=T),
        EventFactory(user_id="u1", anonymous_id="d1", event_name="view", created_at=T),
        EventFactory(user_id=None, anonymous_id="a1", event_name="purchase", created_at=T),
    )


async def snapshot(test_db: AsyncSession, segment_id) -> set:
    result = await test_db.execute(
        select(SegmentUser.identity).where(SegmentUser.segment_id == segment_id)
    )
    return set(result.scalars().all())


async def row_count(test_db: AsyncSession, segment_id) -> int:
    return await test_db.scalar(
        select(func.count()).select_from(SegmentUser).where(SegmentUser.segment_id == segment_id)
    )


PURCHASED = condition(field="purchase")
VIEWED = condition(field="view")


# ============================================
# Scenario Tests
# ============================================


class TestScenarios:
    """u1 purchased and viewed, anonymous a1 purchased."""

    @pytest.mark.asyncio
    async def test_single_performed_condition(self, test_db, materializer, segment, scenario_events):
        size = await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))

        assert size == 2
        assert await snapshot(test_db, segment.id) == {"user:u1", "anon:a1"}

    @pytest.mark.asyncio
    async def test_and_of_two_events(self, test_db, materializer, segment, scenario_events):
        size = await materializer.calculate_segment_size(segment.id, criteria(PURCHASED, VIEWED))

        assert size == 1
        assert await snapshot(test_db, segment.id) == {"user:u1"}

    @pytest.mark.asyncio
    async def test_or_of_two_events(self, test_db, materializer, segment, scenario_events):
        size = await materializer.calculate_segment_size(
            segment.id, criteria(PURCHASED, VIEWED, logic="OR")
        )

        assert size == 2
        assert await snapshot(test_db, segment.id) == {"user:u1", "anon:a1"}

    @pytest.mark.asyncio
    async def test_lowercase_logic_is_accepted(self, materializer, segment, scenario_events):
        size = await materializer.calculate_segment_size(
            segment.id, criteria(PURCHASED, VIEWED, logic="or")
        )
        assert size == 2

    @pytest.mark.asyncio
    async def test_not_performed(self, test_db, materializer, segment, scenario_events):
        # any event other than purchase
        size = await materializer.calculate_segment_size(
            segment.id, criteria(condition(field="purchase", operator="not_performed"))
        )

        assert size == 1
        assert await snapshot(test_db, segment.id) == {"user:u1"}


# ============================================
# Evaluation Properties
# ============================================


class TestEvaluationProperties:

    @pytest.mark.asyncio
    async def test_preview_matches_calculate(self, project, materializer, segment, scenario_events):
        cases = [
            criteria(),
            criteria(PURCHASED),
            criteria(PURCHASED, VIEWED),
            criteria(PURCHASED, VIEWED, logic="OR"),
            criteria(condition(type="property", field="missing", operator="not_exists")),
        ]
        for case in cases:
            preview = await materializer.preview_segment_size(project.id, case)
            calculated = await materializer.calculate_segment_size(segment.id, case)
            assert preview == calculated, case

    @pytest.mark.asyncio
    async def test_condition_order_does_not_matter(self, materializer, project, scenario_events):
        for logic in ("AND", "OR"):
            forward = await materializer.preview(project.id, criteria(PURCHASED, VIEWED, logic=logic))
            backward = await materializer.preview(project.id, criteria(VIEWED, PURCHASED, logic=logic))
            assert forward.identities == backward.identities

    @pytest.mark.asyncio
    async def test_adding_conditions_narrows_and_widens(self, materializer, project, add_events):
        await add_events(
            *IdentifiedEventFactory.create_batch(6, event_name="signup"),
            *IdentifiedEventFactory.create_batch(4, event_name="purchase"),
            *AnonymousEventFactory.create_batch(3, event_name="page_view"),
        )
        base = [condition(field="signup")]
        extra = condition(field="purchase")

        and_before = await materializer.preview_segment_size(project.id, criteria(*base))
        and_after = await materializer.preview_segment_size(project.id, criteria(*base, extra))
        or_before = await materializer.preview_segment_size(project.id, criteria(*base, logic="OR"))
        or_after = await materializer.preview_segment_size(project.id, criteria(*base, extra, logic="OR"))

        assert and_after <= and_before
        assert or_after >= or_before

    @pytest.mark.asyncio
    async def test_empty_criteria_is_every_identity(self, materializer, segment, add_events):
        await add_events(
            EventFactory(user_id="u1", anonymous_id="d1"),
            EventFactory(user_id="u1", anonymous_id="d2"),
            EventFactory(user_id=None, anonymous_id="a1"),
            EventFactory(user_id=None, anonymous_id="a2"),
            EventFactory(user_id="", anonymous_id="a2"),
        )

        size = await materializer.calculate_segment_size(segment.id, criteria())

        assert size == 3

    @pytest.mark.asyncio
    async def test_user_id_collapses_devices(self, materializer, project, add_events):
        await add_events(
            EventFactory(user_id="u1", anonymous_id="phone", event_name="purchase"),
            EventFactory(user_id="u1", anonymous_id="laptop", event_name="view"),
        )

        result = await materializer.preview(project.id, criteria(PURCHASED, VIEWED))

        assert {str(i) for i in result.identities} == {"user:u1"}

    @pytest.mark.asyncio
    async def test_events_outside_project_are_ignored(self, test_db, materializer, project, add_events):
        from analytics_engine.models import Event, Project

        other = Project(name="Other")
        test_db.add(other)
        await test_db.commit()
        test_db.add(Event(project_id=other.id, **EventFactory(user_id="outsider", event_name="purchase")))
        await test_db.commit()
        await add_events(EventFactory(user_id="insider", event_name="purchase"))

        result = await materializer.preview(project.id, criteria(PURCHASED))

        assert {str(i) for i in result.identities} == {"user:insider"}


# ============================================
# Timeframe Tests
# ============================================


class TestTimeframes:

    @pytest_asyncio.fixture
    async def boundary_events(self, add_events):
        await add_events(
            EventFactory(user_id="at", event_name="purchase", created_at=T),
            EventFactory(user_id="early", event_name="purchase", created_at=T - timedelta(days=1)),
            EventFactory(user_id="late", event_name="purchase", created_at=T + timedelta(days=1)),
        )

    async def members(self, materializer, project, timeframe) -> set:
        result = await materializer.preview(
            project.id, criteria(condition(field="purchase", timeframe=timeframe))
        )
        return {i.value for i in result.identities}

    @pytest.mark.asyncio
    async def test_since_includes_boundary(self, materializer, project, boundary_events):
        members = await self.members(materializer, project, {"type": "since", "value": T.isoformat()})
        assert members == {"at", "late"}

    @pytest.mark.asyncio
    async def test_before_includes_boundary(self, materializer, project, boundary_events):
        members = await self.members(materializer, project, {"type": "before", "value": T.isoformat()})
        assert members == {"at", "early"}

    @pytest.mark.asyncio
    async def test_between_is_inclusive(self, materializer, project, boundary_events):
        members = await self.members(
            materializer, project,
            {"type": "between", "value": {"start": T.isoformat(), "end": T.isoformat()}},
        )
        assert members == {"at"}

    @pytest.mark.asyncio
    async def test_last_n_days(self, materializer, project, add_events):
        now = datetime.now(timezone.utc)
        await add_events(
            EventFactory(user_id="recent", event_name="purchase", created_at=now - timedelta(days=2)),
            EventFactory(user_id="stale", event_name="purchase", created_at=now - timedelta(days=30)),
        )
        members = await self.members(materializer, project, {"type": "last_n_days", "value": 7})
        assert members == {"recent"}

    @pytest.mark.asyncio
    async def test_malformed_timeframe_is_ignored(self, materializer, project, boundary_events):
        assert await self.members(materializer, project, {"type": "since", "value": "not a date"}) == {
            "at", "early", "late"
        }
        assert await self.members(materializer, project, {"type": "fortnight", "value": 2}) == {
            "at", "early", "late"
        }


# ============================================
# Materialization Tests
# ============================================


class TestMaterialization:

    @pytest.mark.asyncio
    async def test_recalculation_replaces_snapshot(self, test_db, materializer, segment, scenario_events):
        await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))
        await materializer.calculate_segment_size(segment.id, criteria(VIEWED))

        assert await snapshot(test_db, segment.id) == {"user:u1"}

    @pytest.mark.asyncio
    async def test_anonymous_rows_repeat_id_in_user_id(self, materializer, segment, scenario_events):
        await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))

        rows = await materializer.get_segment_users(segment.id)
        by_identity = {row.identity: row for row in rows}
        assert by_identity["anon:a1"].user_id == "a1"
        assert by_identity["anon:a1"].anonymous_id == "a1"
        assert by_identity["user:u1"].user_id == "u1"
        assert by_identity["user:u1"].anonymous_id is None

    @pytest.mark.asyncio
    async def test_batches_cover_every_member(self, test_db, session_factory, segment, add_events):
        await add_events(*IdentifiedEventFactory.create_batch(7, event_name="purchase"))
        materializer = MembershipMaterializer(session_factory, batch_size=3)

        size = await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))

        assert size == await row_count(test_db, segment.id)

    @pytest.mark.asyncio
    async def test_missing_segment_fails_before_deleting(self, test_db, materializer, segment, scenario_events):
        await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))

        with pytest.raises(NotFoundError):
            await materializer.calculate_segment_size(uuid.uuid4(), criteria(VIEWED))

        assert await snapshot(test_db, segment.id) == {"user:u1", "anon:a1"}

    @pytest.mark.asyncio
    async def test_failed_insert_keeps_previous_snapshot(self, test_db, session_factory, segment, scenario_events):
        await MembershipMaterializer(session_factory).calculate_segment_size(segment.id, criteria(PURCHASED))

        class DuplicatingMaterializer(MembershipMaterializer):
            def _membership_rows(self, segment_id, evaluation):
                rows = super()._membership_rows(segment_id, evaluation)
                return rows + rows[:1]  # primary key collision in the last batch

        broken = DuplicatingMaterializer(session_factory, batch_size=1)
        with pytest.raises(PartialWriteFailureError):
            await broken.calculate_segment_size(segment.id, criteria(VIEWED))

        assert await snapshot(test_db, segment.id) == {"user:u1", "anon:a1"}

    @pytest.mark.asyncio
    async def test_reserved_operator_in_stored_criteria(self, test_db, materializer, segment, scenario_events):
        await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))
        reserved = criteria(condition(type="property", field="plan", operator="in", value=["pro"]))

        with pytest.raises(InvalidCriteriaError):
            await materializer.calculate_segment_size(segment.id, reserved)

        assert await row_count(test_db, segment.id) == 2

    @pytest.mark.asyncio
    async def test_same_segment_recalculations_serialize(self, test_db, session_factory, segment, scenario_events):
        from analytics_engine.services.segments import SegmentEvaluator, SQLAlchemyEventStore

        log = []
        gate = asyncio.Event()

        class GatedEvaluator(SegmentEvaluator):
            async def evaluate(self, project_id, criteria):
                log.append(("evaluate", criteria["conditions"][0]["field"]))
                await gate.wait()
                return await super().evaluate(project_id, criteria)

        class RecordingMaterializer(MembershipMaterializer):
            def _membership_rows(self, segment_id, evaluation):
                log.append(("write", evaluation.size))
                return super()._membership_rows(segment_id, evaluation)

        materializer = RecordingMaterializer(
            session_factory, evaluator=GatedEvaluator(SQLAlchemyEventStore(session_factory))
        )
        recalculations = asyncio.gather(
            materializer.materialize(segment.id, criteria(PURCHASED)),
            materializer.materialize(segment.id, criteria(VIEWED)),
        )

        async def first_evaluation_started():
            while not log:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(first_evaluation_started(), timeout=5)
        await asyncio.sleep(0.1)
        # the second recalculation is still waiting for the first to finish
        assert log == [("evaluate", "purchase")]

        gate.set()
        results = await recalculations

        assert [r.size for r in results] == [2, 1]
        assert log == [("evaluate", "purchase"), ("write", 2), ("evaluate", "view"), ("write", 1)]
        assert await snapshot(test_db, segment.id) == {"user:u1"}

    @pytest.mark.asyncio
    async def test_scan_cap_marks_result_approximate(self, session_factory, segment, add_events):
        from analytics_engine.services.segments import SegmentEvaluator, SQLAlchemyEventStore

        await add_events(*IdentifiedEventFactory.create_batch(5, event_name="purchase"))
        capped = MembershipMaterializer(
            session_factory,
            evaluator=SegmentEvaluator(SQLAlchemyEventStore(session_factory), scan_limit=3),
        )

        result = await capped.materialize(segment.id, criteria(PURCHASED))

        assert result.is_approximate is True
        assert result.size <= 3

    @pytest.mark.asyncio
    async def test_users_are_paginated(self, materializer, segment, add_events):
        await add_events(*IdentifiedEventFactory.create_batch(5, event_name="purchase"))
        await materializer.calculate_segment_size(segment.id, criteria(PURCHASED))

        first = await materializer.get_segment_users(segment.id, limit=2, offset=0)
        rest = await materializer.get_segment_users(segment.id, limit=10, offset=2)

        assert len(first) == 2
        assert len(rest) == 3
        assert {r.identity for r in first}.isdisjoint({r.identity for r in rest})

    @pytest.mark.asyncio
    async def test_users_of_missing_segment(self, materializer):
        with pytest.raises(NotFoundError):
            await materializer.get_segment_users(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_preview_of_missing_project(self, materializer):
        with pytest.raises(NotFoundError) as exc_info:
            await materializer.preview_segment_size(uuid.uuid4(), criteria(PURCHASED))
        assert exc_info.value.resource == "Project"

    @pytest.mark.asyncio
    async def test_malformed_ids_are_not_found(self, materializer):
        with pytest.raises(NotFoundError) as exc_info:
            await materializer.preview_segment_size("not-a-uuid", criteria(PURCHASED))
        assert exc_info.value.resource == "Project"

        with pytest.raises(NotFoundError):
            await materializer.get_segment_users("not-a-uuid")
        with pytest.raises(NotFoundError):
            await materializer.calculate_segment_size("not-a-uuid", criteria(PURCHASED))


# ============================================
# Segment Service Tests
# ============================================


class TestSegmentService:

    @pytest.mark.asyncio
    async def test_create_segment_calculates_initial_size(self, segment_service, project, scenario_events):
        data = SegmentCreate(
            project_id=project.id,
            **SegmentFactory(criteria=criteria(PURCHASED)),
        )

        segment = await segment_service.create_segment(data)

        assert segment.cached_size == 2
        assert segment.last_calculated_at is not None
        assert segment.is_approximate is False
        assert segment.criteria["logic"] == "AND"

    @pytest.mark.asyncio
    async def test_create_segment_for_missing_project(self, segment_service):
        with pytest.raises(NotFoundError):
            await segment_service.create_segment(
                SegmentCreate(project_id=uuid.uuid4(), **SegmentFactory())
            )

    @pytest.mark.asyncio
    async def test_create_segment_rejects_reserved_type(self, project):
        with pytest.raises(ValueError):
            SegmentCreate(
                project_id=project.id,
                **SegmentFactory(criteria=criteria(condition(type="user", field="email", operator="exists"))),
            )

    @pytest.mark.asyncio
    async def test_get_segment_not_found(self, segment_service):
        with pytest.raises(NotFoundError):
            await segment_service.get_segment(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await segment_service.get_segment("not-a-uuid")

    @pytest.mark.asyncio
    async def test_list_segments_newest_first(self, test_db, segment_service, project):
        for days_ago, name in [(3, "oldest"), (1, "newest"), (2, "middle")]:
            test_db.add(Segment(
                project_id=project.id,
                created_at=T - timedelta(days=days_ago),
                **SegmentFactory(name=name),
            ))
        await test_db.commit()

        segments = await segment_service.list_segments(project.id)

        assert [s.name for s in segments] == ["newest", "middle", "oldest"]

    @pytest.mark.asyncio
    async def test_update_criteria_recalculates(self, segment_service, segment, scenario_events):
        updated = await segment_service.update_segment(
            segment.id, SegmentUpdate(criteria=SegmentCriteria.model_validate(criteria(VIEWED)))
        )

        assert updated.cached_size == 1
        assert updated.last_calculated_at is not None

    @pytest.mark.asyncio
    async def test_update_name_keeps_snapshot(self, segment_service, segment, scenario_events):
        await segment_service.recalculate_segment(segment.id)
        before = (await segment_service.get_segment(segment.id)).last_calculated_at

        updated = await segment_service.update_segment(segment.id, SegmentUpdate(name="Renamed"))

        assert updated.name == "Renamed"
        assert updated.last_calculated_at == before

    @pytest.mark.asyncio
    async def test_failed_criteria_update_keeps_stored_criteria(self, test_db, session_factory, segment, scenario_events):
        from analytics_engine.services.segments import SegmentService

        service = SegmentService(test_db, MembershipMaterializer(session_factory))
        segment.criteria = criteria(PURCHASED)
        await test_db.commit()
        await service.recalculate_segment(segment.id)

        class FailingMaterializer(MembershipMaterializer):
            async def materialize(self, segment_id, criteria):
                raise PartialWriteFailureError(str(segment_id), "disk full")

        failing = SegmentService(test_db, FailingMaterializer(session_factory))
        with pytest.raises(PartialWriteFailureError):
            await failing.update_segment(
                segment.id, SegmentUpdate(criteria=SegmentCriteria.model_validate(criteria(VIEWED)))
            )

        stored = await service.get_segment(segment.id)
        assert stored.criteria == criteria(PURCHASED)
        assert stored.cached_size == 2

    @pytest.mark.asyncio
    async def test_update_with_same_conditions_keeps_snapshot(self, test_db, segment_service, segment, scenario_events):
        segment.criteria = criteria(PURCHASED)
        await test_db.commit()
        await segment_service.recalculate_segment(segment.id)
        before = await segment_service.get_segment(segment.id)
        calculated_at, stored_criteria = before.last_calculated_at, before.criteria

        same = SegmentCriteria.model_validate({
            "conditions": [{"type": "event", "field": "purchase", "operator": "performed"}],
            "logic": "AND",
        })
        updated = await segment_service.update_segment(segment.id, SegmentUpdate(criteria=same))

        assert updated.last_calculated_at == calculated_at
        assert updated.criteria["conditions"][0]["id"] == stored_criteria["conditions"][0]["id"]

    @pytest.mark.asyncio
    async def test_failed_recalculation_keeps_cached_size(self, test_db, session_factory, segment, scenario_events):
        from analytics_engine.services.segments import SegmentService

        service = SegmentService(test_db, MembershipMaterializer(session_factory))
        segment.criteria = criteria(PURCHASED)
        await test_db.commit()
        await service.recalculate_segment(segment.id)

        class FailingMaterializer(MembershipMaterializer):
            async def materialize(self, segment_id, criteria):
                raise PartialWriteFailureError(str(segment_id), "disk full")

        failing = SegmentService(test_db, FailingMaterializer(session_factory))
        with pytest.raises(PartialWriteFailureError):
            await failing.recalculate_segment(segment.id)

        assert (await service.get_segment(segment.id)).cached_size == 2

    @pytest.mark.asyncio
    async def test_delete_segment_removes_members(self, test_db, segment_service, segment, scenario_events):
        await segment_service.recalculate_segment(segment.id)

        await segment_service.delete_segment(segment.id)

        assert await test_db.get(Segment, segment.id) is None
        assert await row_count(test_db, segment.id) == 0

    @pytest.mark.asyncio
    async def test_export_segment(self, test_db, segment_service, segment, scenario_events):
        segment.criteria = criteria(PURCHASED)
        await test_db.commit()
        await segment_service.recalculate_segment(segment.id)

        export = await segment_service.export_segment(segment.id)

        assert export.id == segment.id
        assert export.criteria == segment.criteria
        assert {u.user_id for u in export.users} == {"u1", "a1"}

    @pytest.mark.asyncio
    async def test_get_segment_users_returns_rows(self, segment_service, segment, scenario_events):
        await segment_service.recalculate_segment(segment.id)

        users = await segment_service.get_segment_users(segment.id, limit=1)

        assert len(users) == 1

    @pytest.mark.asyncio
    async def test_preview_segment(self, segment_service, project, scenario_events):
        preview = await segment_service.preview_segment(project.id, criteria(PURCHASED, VIEWED, logic="OR"))

        assert preview.project_id == project.id
        assert preview.preview_size == 2
        assert preview.is_approximate is False
