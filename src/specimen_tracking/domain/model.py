"""
Specimen lifecycle domain model.
One flat record per specimen, shared by both testing programs; the program
decides which milestone fields are meaningful.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from specimen_tracking.domain.events import SpecimenRegistered, SpecimenTransitioned


class Program(Enum):
    """Testing program a specimen belongs to"""
    VIRAL_LOAD = "viral_load"
    EID = "eid"


class Stage(Enum):
    """Current position of a specimen in the workflow"""
    PENDING_COLLECTION = "pending_collection"
    COLLECTED = "collected"
    IN_TRANSIT_OR_PROCESSING = "in_transit_or_processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Action(Enum):
    """User-initiated actions on a specimen"""
    COLLECT = "collect"
    EDIT = "edit"
    CANCEL = "cancel"
    PACKAGE = "package"
    RECEIVE = "receive"
    FINALIZE_RESULT = "finalize_result"
    VIEW_RESULT = "view_result"
    AMEND_RESULT = "amend_result"
    RECOLLECT = "recollect"


class ResultCode(Enum):
    """Accepted result of a test run"""
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    DETECTED = "DETECTED"
    NOT_DETECTED = "NOT_DETECTED"
    INVALID = "INVALID"
    REJECTED = "REJECTED"


# Milestone timestamps in workflow order
MILESTONE_FIELDS = (
    "requested_at",
    "collected_at",
    "packaged_at",
    "dispatched_at",
    "received_at",
    "result_finalized_at",
    "amended_at",
    "cancelled_at",
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Specimen:
    """
    A biological sample tracked through the testing workflow.

    Identity is (program, sample_id). Records are only ever appended to:
    each milestone is written once by the actor responsible for it.
    """
    sample_id: str
    program: Program
    requested_at: datetime
    collected_at: Optional[datetime] = None
    collected_by: Optional[str] = None
    sample_type: Optional[str] = None
    packaged_at: Optional[datetime] = None          # viral load only
    dispatched_at: Optional[datetime] = None        # viral load only
    package_id: Optional[str] = None                # viral load only
    received_at: Optional[datetime] = None
    received_by: Optional[str] = None
    result_finalized_at: Optional[datetime] = None
    verified: bool = False
    finalized_by: Optional[str] = None
    amended_at: Optional[datetime] = None
    amended_by: Optional[str] = None
    result: Optional[ResultCode] = None
    result_value: Optional[str] = None              # e.g. copies/ml for viral load
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    version_number: int = 0
    events: List = field(default_factory=list, compare=False, repr=False)

    def __hash__(self):
        return hash((self.program, self.sample_id))

    def register(self) -> None:
        """Mark the specimen as newly requested and raise SpecimenRegistered."""
        self.events.append(
            SpecimenRegistered(
                program=self.program.value,
                sample_id=self.sample_id,
                requested_at=self.requested_at,
            )
        )

    def milestones(self) -> Dict[str, datetime]:
        """Recorded milestone timestamps, normalized to UTC."""
        recorded = {}
        for name in MILESTONE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                recorded[name] = as_utc(value)
        return recorded

    def apply_patch(
        self,
        patch: Dict[str, Any],
        action: "Action",
        stage_before: "Stage",
        stage_after: "Stage",
        actor: Optional[str] = None,
    ) -> None:
        """
        Merge a validated patch into the record and raise SpecimenTransitioned.

        The stages are passed in by the caller so the domain entity does not
        depend on the resolver module.
        """
        for name, value in patch.items():
            setattr(self, name, value)

        self.events.append(
            SpecimenTransitioned(
                program=self.program.value,
                sample_id=self.sample_id,
                action=action.value,
                stage_before=stage_before.value,
                stage_after=stage_after.value,
                actor=actor,
                occurred_at=datetime.now(timezone.utc),
            )
        )
