from datetime import datetime, timedelta, timezone

from specimen_tracking.domain.counters import count_by_stage
from specimen_tracking.domain.model import Program, ResultCode, Stage

T0 = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)


def at(hours):
    return T0 + timedelta(hours=hours)


def test_empty_input_has_every_stage_at_zero():
    counts = count_by_stage([])

    assert counts == {stage: 0 for stage in Stage}


def test_counts_each_specimen_once(make_specimen):
    specimens = [
        make_specimen("S-1"),
        make_specimen("S-2"),
        make_specimen("S-3", collected_at=at(1)),
        make_specimen("S-4", program=Program.VIRAL_LOAD, collected_at=at(1), packaged_at=at(2)),
        make_specimen("S-5", collected_at=at(1), received_at=at(2), result_finalized_at=at(3),
                      verified=True, result=ResultCode.NEGATIVE),
        make_specimen("S-6", result=ResultCode.REJECTED),
    ]

    counts = count_by_stage(specimens)

    assert counts[Stage.PENDING_COLLECTION] == 2
    assert counts[Stage.COLLECTED] == 1
    assert counts[Stage.IN_TRANSIT_OR_PROCESSING] == 1
    assert counts[Stage.COMPLETED] == 1
    assert counts[Stage.REJECTED] == 1
    assert sum(counts.values()) == len(specimens)


def test_accepts_a_generator(make_specimen):
    counts = count_by_stage(make_specimen(f"S-{i}") for i in range(4))

    assert counts[Stage.PENDING_COLLECTION] == 4
