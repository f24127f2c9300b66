"""Domain events for specimen tracking service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Event:
    """Base class for facts raised by the Specimen entity."""


@dataclass
class SpecimenRegistered(Event):
    """Event raised when a specimen request has been stored."""
    program: str
    sample_id: str
    requested_at: datetime


@dataclass
class SpecimenTransitioned(Event):
    """Event raised when a transition has been applied to a specimen."""
    program: str
    sample_id: str
    action: str
    stage_before: str
    stage_after: str
    occurred_at: datetime
    actor: Optional[str] = None
