"""
Integration tests for the SQLAlchemy storage layer.

Tests verify that:
1. Specimens round-trip through the imperative mapping
2. Every write bumps version_number
3. A write based on a stale read loses the compare-and-swap
4. A Postgres serialization failure (SQLSTATE 40001) is retried like a lost
   compare-and-swap
5. Views and handlers work against a real session

SQLite has no snapshot isolation, so two sessions racing here end in a
zero-row UPDATE (StaleDataError). Postgres under REPEATABLE READ fails the
same UPDATE with 40001 instead; the serialization tests inject that error
at commit time.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from specimen_tracking import views
from specimen_tracking.adapters.repository import SqlAlchemyRepository
from specimen_tracking.domain.commands import RecordTransition, RegisterSpecimen
from specimen_tracking.domain.model import Program, ResultCode, Specimen, Stage
from specimen_tracking.domain.status import resolve_status
from specimen_tracking.service_layer import messagebus
from specimen_tracking.service_layer.handlers import TransitionRejected
from specimen_tracking.domain.transitions import TransitionError
from specimen_tracking.service_layer.unit_of_work import ConcurrencyConflict, SqlAlchemyUnitOfWork

T0 = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)


def at(hours):
    return T0 + timedelta(hours=hours)


def register(uow, sample_id="S-1", program="eid"):
    messagebus.handle(RegisterSpecimen(program=program, sample_id=sample_id, requested_at=T0), uow)


def test_repository_round_trip(sqlite_session_factory):
    session = sqlite_session_factory()
    repo = SqlAlchemyRepository(session)
    repo.add(Specimen(
        sample_id="VL-1", program=Program.VIRAL_LOAD, requested_at=T0,
        collected_at=at(1), result=ResultCode.DETECTED, result_value="1200",
    ))
    session.commit()
    session.close()

    repo = SqlAlchemyRepository(sqlite_session_factory())
    specimen = repo.get(Program.VIRAL_LOAD, "VL-1")

    assert specimen.result == ResultCode.DETECTED
    assert specimen.milestones()["collected_at"] == at(1)
    assert specimen.events == []
    assert repo.get(Program.EID, "VL-1") is None


def test_version_number_increments_on_every_write(sqlite_session_factory, fake_redis):
    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    register(uow)

    with uow:
        assert uow.specimens.get(Program.EID, "S-1").version_number == 1

    [outcome] = messagebus.handle(RecordTransition(
        program="eid", sample_id="S-1", action="collect",
        payload={"when": at(1).isoformat(), "collector": "nurse-17", "sample_type": "DBS"},
    ), uow)

    assert outcome["version_number"] == 2
    with uow:
        specimen = uow.specimens.get(Program.EID, "S-1")
        assert specimen.version_number == 2
        assert resolve_status(specimen) == Stage.COLLECTED


def test_stale_write_loses_compare_and_swap(sqlite_file_session_factory):
    """Zero-row UPDATE on SQLite; see test_serialization_failure_is_retried for Postgres."""
    uow = SqlAlchemyUnitOfWork(sqlite_file_session_factory)
    with uow:
        uow.specimens.add(Specimen(sample_id="S-1", program=Program.EID, requested_at=T0))
        uow.commit()

    first = SqlAlchemyUnitOfWork(sqlite_file_session_factory)
    second = SqlAlchemyUnitOfWork(sqlite_file_session_factory)
    with first, second:
        a = first.specimens.get(Program.EID, "S-1")
        b = second.specimens.get(Program.EID, "S-1")

        a.collected_at = at(1)
        first.commit()

        b.collected_at = at(2)
        with pytest.raises(ConcurrencyConflict):
            second.commit()

    with uow:
        specimen = uow.specimens.get(Program.EID, "S-1")
        assert specimen.version_number == 2
        assert specimen.milestones()["collected_at"] == at(1)


class SerializationFailure(Exception):
    """Stands in for psycopg2.errors.SerializationFailure."""
    pgcode = "40001"


def failing_commits(session_factory, failures):
    """Sessions whose first `failures` commits fail the way a losing Postgres UPDATE does."""
    remaining = [failures]

    def make_session():
        session = session_factory()
        commit = session.commit

        def commit_or_fail():
            if remaining[0]:
                remaining[0] -= 1
                session.flush()
                raise OperationalError(
                    "UPDATE specimens SET ... WHERE specimens.version_number = ?", {},
                    SerializationFailure("could not serialize access due to concurrent update"),
                )
            commit()

        session.commit = commit_or_fail
        return session

    return make_session


def test_serialization_failure_is_retried(sqlite_session_factory, fake_redis):
    register(SqlAlchemyUnitOfWork(sqlite_session_factory))
    uow = SqlAlchemyUnitOfWork(failing_commits(sqlite_session_factory, failures=2))

    [outcome] = messagebus.handle(RecordTransition(
        program="eid", sample_id="S-1", action="collect",
        payload={"when": at(1), "collector": "nurse-17", "sample_type": "DBS"},
    ), uow)

    assert outcome["stage"] == "collected"
    with SqlAlchemyUnitOfWork(sqlite_session_factory) as check:
        specimen = check.specimens.get(Program.EID, "S-1")
        assert specimen.version_number == 2
        assert specimen.milestones()["collected_at"] == at(1)


def test_repeated_serialization_failures_are_a_conflict(sqlite_session_factory, fake_redis, monkeypatch):
    monkeypatch.setenv("MAX_CONFLICT_RETRIES", "2")
    register(SqlAlchemyUnitOfWork(sqlite_session_factory))
    uow = SqlAlchemyUnitOfWork(failing_commits(sqlite_session_factory, failures=5))

    with pytest.raises(TransitionRejected) as excinfo:
        messagebus.handle(RecordTransition(
            program="eid", sample_id="S-1", action="collect",
            payload={"when": at(1), "collector": "nurse-17", "sample_type": "DBS"},
        ), uow)

    assert excinfo.value.error == TransitionError.CONFLICT
    with SqlAlchemyUnitOfWork(sqlite_session_factory) as check:
        specimen = check.specimens.get(Program.EID, "S-1")
        assert specimen.version_number == 1
        assert specimen.collected_at is None


def test_stale_expected_version_is_rejected(sqlite_session_factory, fake_redis):
    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    register(uow)

    with pytest.raises(TransitionRejected) as excinfo:
        messagebus.handle(RecordTransition(
            program="eid", sample_id="S-1", action="cancel",
            payload={"when": at(1), "reason": "duplicate"}, expected_version=7,
        ), uow)

    assert excinfo.value.error == TransitionError.CONFLICT


def test_views_against_database(sqlite_session_factory, fake_redis):
    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    register(uow, "S-1")
    register(uow, "S-2")
    register(uow, "VL-1", program="viral_load")
    messagebus.handle(RecordTransition(
        program="eid", sample_id="S-2", action="cancel",
        payload={"when": at(1), "reason": "duplicate request"},
    ), uow)

    status = views.specimen_status(Program.EID, "S-2", uow)
    counts = views.stage_counts(uow)
    eid_counts = views.stage_counts(uow, Program.EID)

    assert status["stage"] == "rejected"
    assert status["label"] == "Rejected"
    assert status["permitted_actions"] == ["recollect", "view_result"]
    assert status["result"] == "REJECTED"
    assert views.specimen_status(Program.EID, "missing", uow) is None

    assert counts["total"] == 3
    assert counts["counts"]["pending_collection"] == 2
    assert counts["counts"]["rejected"] == 1
    assert eid_counts["program"] == "eid"
    assert eid_counts["total"] == 2


def test_specimens_by_stage_against_database(sqlite_session_factory, fake_redis):
    uow = SqlAlchemyUnitOfWork(sqlite_session_factory)
    for n, sample_id in enumerate(["VL-1", "VL-2", "VL-3"]):
        messagebus.handle(RegisterSpecimen(
            program="viral_load", sample_id=sample_id, requested_at=at(n),
        ), uow)
    register(uow, "S-1")
    messagebus.handle(RecordTransition(
        program="viral_load", sample_id="VL-2", action="cancel",
        payload={"when": at(5), "reason": "haemolysed"},
    ), uow)

    pending = views.specimens_by_stage(uow, Program.VIRAL_LOAD, Stage.PENDING_COLLECTION)
    first_page = views.specimens_by_stage(uow, stage=Stage.PENDING_COLLECTION, limit=2)
    second_page = views.specimens_by_stage(uow, stage=Stage.PENDING_COLLECTION, limit=2, offset=2)
    everything = views.specimens_by_stage(uow)

    assert pending["program"] == "viral_load"
    assert pending["stage"] == "pending_collection"
    assert [s["sample_id"] for s in pending["specimens"]] == ["VL-3", "VL-1"]
    assert first_page["total"] == second_page["total"] == 3
    assert [s["sample_id"] for s in first_page["specimens"]] == ["VL-3", "VL-1"]
    assert [s["sample_id"] for s in second_page["specimens"]] == ["S-1"]
    assert everything["total"] == 4
