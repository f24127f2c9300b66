# pylint: disable=redefined-outer-name
from datetime import datetime, timedelta, timezone

import pytest

from specimen_tracking.adapters import repository
from specimen_tracking.domain.model import Program, Specimen
from specimen_tracking.service_layer import unit_of_work


T0 = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)


def at(hours: float) -> datetime:
    """Timestamp `hours` after T0."""
    return T0 + timedelta(hours=hours)


class FakeRepository(repository.AbstractRepository):
    def __init__(self, specimens=()):
        super().__init__()
        self._specimens = {(s.program, s.sample_id): s for s in specimens}

    def _add(self, specimen):
        self._specimens[(specimen.program, specimen.sample_id)] = specimen

    def _get(self, program, sample_id):
        return self._specimens.get((program, sample_id))

    def _list(self, program):
        return [s for s in self._specimens.values() if program is None or s.program == program]


class FakeUnitOfWork(unit_of_work.AbstractUnitOfWork):
    """In-memory unit of work; a commit bumps the version of every specimen that raised events."""

    def __init__(self, specimens=()):
        self.specimens = FakeRepository(specimens)
        self.commits = 0

    def _commit(self):
        self.commits += 1
        for specimen in self.specimens.seen:
            if specimen.events:
                specimen.version_number += 1

    def rollback(self):
        pass


@pytest.fixture
def make_specimen():
    """Factory for specimens requested at T0."""
    def _make(sample_id="S-1", program=Program.EID, **fields):
        fields.setdefault("requested_at", T0)
        return Specimen(sample_id=sample_id, program=program, **fields)
    return _make


@pytest.fixture
def fake_uow():
    return FakeUnitOfWork()


@pytest.fixture
def sqlite_session_factory():
    """Create SQLite in-memory database for fast testing."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from sqlalchemy.pool import StaticPool
    from specimen_tracking.adapters import orm

    # StaticPool keeps one connection so TestClient worker threads see the same database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def sqlite_file_session_factory(tmp_path):
    """File-backed SQLite so two sessions hold separate connections."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from specimen_tracking.adapters import orm

    engine = create_engine(f"sqlite:///{tmp_path / 'specimens.db'}")
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def fake_redis():
    """Swap the publisher's Redis client for an in-memory one."""
    import fakeredis
    from unittest.mock import patch

    client = fakeredis.FakeRedis()
    with patch("specimen_tracking.adapters.redis_publisher.r", client):
        yield client
