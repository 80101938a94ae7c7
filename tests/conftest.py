import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from analytics_engine.database import Base
from analytics_engine.models import Event, Project, Segment
from analytics_engine.services.segments import MembershipMaterializer, SegmentService

from tests.factories import SegmentFactory


@pytest.fixture
def test_database_url(tmp_path):
    """SQLite file per test so separate sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def test_engine(test_database_url):
    """Create test database and tables."""
    engine = create_async_engine(
        test_database_url,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def project(test_db: AsyncSession) -> Project:
    """Create a test project."""
    project = Project(name="Test Project")
    test_db.add(project)
    await test_db.commit()
    await test_db.refresh(project)
    return project


@pytest_asyncio.fixture
async def segment(test_db: AsyncSession, project: Project) -> Segment:
    """Create an empty dynamic segment in the test project."""
    segment = Segment(project_id=project.id, **SegmentFactory())
    test_db.add(segment)
    await test_db.commit()
    await test_db.refresh(segment)
    return segment


@pytest.fixture
def add_events(test_db: AsyncSession, project: Project):
    """Insert event dicts (see EventFactory) into the test project."""

    async def _add(*events: dict) -> None:
        for data in events:
            test_db.add(Event(project_id=project.id, **data))
        await test_db.commit()

    return _add


@pytest.fixture
def materializer(session_factory) -> MembershipMaterializer:
    return MembershipMaterializer(session_factory)


@pytest.fixture
def segment_service(test_db: AsyncSession, materializer: MembershipMaterializer) -> SegmentService:
    return SegmentService(test_db, materializer)
