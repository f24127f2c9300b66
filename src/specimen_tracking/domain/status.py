"""
Status resolver: derive a specimen's Stage from its milestone fields and
look up which actions are legal from that Stage.

Every list view, badge, and counter goes through resolve_status; nothing
else re-derives status from raw fields.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from specimen_tracking.domain.model import Action, Program, ResultCode, Specimen, Stage


@dataclass(frozen=True)
class ProgramMilestones:
    """Fields that mark each lower milestone for one program"""
    collected: Tuple[str, ...]
    in_transit: Tuple[str, ...]


PROGRAM_MILESTONES = {
    Program.VIRAL_LOAD: ProgramMilestones(
        collected=("collected_at",),
        in_transit=("packaged_at", "dispatched_at", "received_at"),
    ),
    Program.EID: ProgramMilestones(
        collected=("collected_at",),
        in_transit=("received_at",),
    ),
}


def _any_set(specimen: Specimen, names: Tuple[str, ...]) -> bool:
    return any(getattr(specimen, name, None) is not None for name in names)


def resolve_status(specimen: Specimen) -> Stage:
    """
    Map a specimen to its current Stage.

    Priority-ordered, first match wins. Never raises: inconsistent historical
    data (e.g. received before collected) still resolves deterministically.
    """
    milestones = PROGRAM_MILESTONES.get(specimen.program, PROGRAM_MILESTONES[Program.EID])

    if specimen.result == ResultCode.REJECTED:
        return Stage.REJECTED
    if specimen.result_finalized_at is not None or specimen.verified:
        return Stage.COMPLETED
    if _any_set(specimen, milestones.in_transit):
        return Stage.IN_TRANSIT_OR_PROCESSING
    if _any_set(specimen, milestones.collected):
        return Stage.COLLECTED
    return Stage.PENDING_COLLECTION


_PERMITTED_ACTIONS = {
    Stage.PENDING_COLLECTION: {
        None: frozenset({Action.COLLECT, Action.EDIT, Action.CANCEL}),
    },
    Stage.COLLECTED: {
        Program.VIRAL_LOAD: frozenset({Action.PACKAGE, Action.EDIT}),
        Program.EID: frozenset({Action.RECEIVE, Action.EDIT}),
    },
    Stage.IN_TRANSIT_OR_PROCESSING: {
        None: frozenset({Action.RECEIVE, Action.FINALIZE_RESULT}),
    },
    Stage.COMPLETED: {
        None: frozenset({Action.VIEW_RESULT, Action.AMEND_RESULT}),
    },
    Stage.REJECTED: {
        None: frozenset({Action.VIEW_RESULT, Action.RECOLLECT}),
    },
}  # type: Dict[Stage, Dict[Optional[Program], FrozenSet[Action]]]

PRIVILEGED_ACTIONS = frozenset({Action.AMEND_RESULT})


def permitted_actions(stage: Stage, program: Optional[Program] = None) -> FrozenSet[Action]:
    """
    Fixed lookup of legal actions for a Stage.

    Without a program the union over both programs is returned.
    """
    rows = _PERMITTED_ACTIONS[stage]
    if None in rows:
        return rows[None]
    if program is not None:
        return rows[program]
    return frozenset().union(*rows.values())


# Display labels for badges, keyed by Stage
STAGE_LABELS = {
    Stage.PENDING_COLLECTION: ("Pending Collection", "Sample request created, awaiting collection"),
    Stage.COLLECTED: ("Collected", "Sample collected, awaiting packaging or dispatch to the lab"),
    Stage.IN_TRANSIT_OR_PROCESSING: ("In Transit / Processing", "Sample sent to or being tested at the laboratory"),
    Stage.COMPLETED: ("Completed", "Sample processed and results available"),
    Stage.REJECTED: ("Rejected", "Sample rejected, a new sample must be collected"),
}


def stage_label(stage: Stage) -> str:
    return STAGE_LABELS[stage][0]


_NEXT_ACTION = {
    Stage.PENDING_COLLECTION: {None: "Collect Sample"},
    Stage.COLLECTED: {Program.VIRAL_LOAD: "Package Sample", Program.EID: "Send to Lab"},
    Stage.IN_TRANSIT_OR_PROCESSING: {None: "Process at Lab"},
    Stage.COMPLETED: {None: "View Result"},
    Stage.REJECTED: {None: "Recollect Sample"},
}


def next_action(stage: Stage, program: Optional[Program] = None) -> str:
    """Human-readable hint for the next workflow step."""
    hints = _NEXT_ACTION[stage]
    if program in hints:
        return hints[program]
    return hints.get(None, "Review Status")
