"""Per-stage counts for dashboard summaries."""
from typing import Dict, Iterable

from specimen_tracking.domain.model import Specimen, Stage
from specimen_tracking.domain.status import resolve_status


def count_by_stage(specimens: Iterable[Specimen]) -> Dict[Stage, int]:
    """
    Count specimens per Stage in a single pass.

    Every Stage is present in the result, with 0 for empty buckets, so
    dashboards render a stable set of cards.
    """
    counts = {stage: 0 for stage in Stage}
    for specimen in specimens:
        counts[resolve_status(specimen)] += 1
    return counts
