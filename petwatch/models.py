"""
Petwatch Data Models

Persisted records (pydantic) and in-memory session state (dataclasses).
"""

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ObservationOrigin(str, Enum):
    """Where an observation came from."""
    RECORDED_UPLOAD = "Uploaded Video"
    LIVE_INTERPRETATION = "Live Interpretation"
    IDENTIFICATION = "Identification"


class Observation(BaseModel):
    """One timestamped, tagged unit of text about a subject."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    text: str
    origin: ObservationOrigin
    source_file: Optional[str] = None


class Subject(BaseModel):
    """A tracked animal with its observation history (newest first)."""

    id: str = Field(default_factory=_new_id)
    name: str
    category: Optional[str] = None
    sub_category: Optional[str] = None
    thumbnail: Optional[str] = None  # base64 JPEG
    observations: List[Observation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.category or 'Unknown'})"


UNKNOWN = "Unknown"


class Identification(BaseModel):
    """Structured identification returned by the backend.

    All three fields are required and must be non-blank. The backend's
    ``animalType``/``breed`` keys are accepted as aliases.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(
        min_length=1,
        validation_alias=AliasChoices("category", "animalType", "animal_type"),
    )
    sub_category: str = Field(
        min_length=1,
        validation_alias=AliasChoices("sub_category", "subCategory", "breed"),
    )
    description: str = Field(min_length=1)

    @property
    def is_unknown(self) -> bool:
        return self.category.lower() == UNKNOWN.lower()

    def summary(self) -> str:
        """Text of the identification observation saved on confirm."""
        return (
            f"Identified as {self.category} ({self.sub_category}). "
            f"Description: {self.description}"
        )


class SessionPhase(str, Enum):
    """Live session states."""
    IDLE = "idle"
    STREAMING = "streaming"
    IDENTIFYING = "identifying"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    TRACKING = "tracking"


@dataclass
class PendingIdentification:
    """Identified but not yet named subject. Never persisted until confirmed."""
    identification: Identification
    proposed_name: str = ""
    snapshot: Optional[bytes] = None

    @classmethod
    def from_identification(
        cls, identification: Identification, snapshot: Optional[bytes] = None
    ) -> "PendingIdentification":
        proposed = "" if identification.is_unknown else identification.category
        return cls(identification=identification, proposed_name=proposed, snapshot=snapshot)

    @property
    def category(self) -> str:
        return self.identification.category

    @property
    def sub_category(self) -> str:
        return self.identification.sub_category

    @property
    def description(self) -> str:
        return self.identification.description


@dataclass
class SessionState:
    """In-memory state of a live session."""

    capacity: int = 100
    phase: SessionPhase = SessionPhase.IDLE
    camera_on: bool = False
    tracked_subject_id: Optional[str] = None
    pending: Optional[PendingIdentification] = None
    muted: bool = False
    latest_text: str = ""
    log: Deque[str] = field(init=False)
    request_in_flight: bool = False
    last_error: Optional[str] = None

    def __post_init__(self):
        self.log = deque(maxlen=self.capacity)

    def push_log(self, text: str):
        """Newest first; the oldest entry falls off at capacity."""
        self.log.appendleft(text)

    def clear_log(self):
        self.log.clear()
        self.latest_text = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize state for listeners."""
        pending = None
        if self.pending is not None:
            pending = {
                "category": self.pending.category,
                "sub_category": self.pending.sub_category,
                "description": self.pending.description,
                "proposed_name": self.pending.proposed_name,
            }
        return {
            "phase": self.phase.value,
            "camera_on": self.camera_on,
            "tracked_subject_id": self.tracked_subject_id,
            "pending": pending,
            "muted": self.muted,
            "latest_text": self.latest_text,
            "log": list(self.log),
            "request_in_flight": self.request_in_flight,
            "last_error": self.last_error,
        }
