"""Domain events for the upload and transcode pipeline.

Events represent state changes and notifications that flow through the EventBus,
decoupling the scheduler and worker from observers such as the activity feed.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import List, Optional
from pydantic import BaseModel, Field
from .models import EncoderKind


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobEvent(Event):
    """Base class for events related to a specific transcode job."""

    file_id: str


class JobQueued(JobEvent):
    """Emitted when a file id is appended to the transcode queue."""

    position: int


class JobStarted(JobEvent):
    """Emitted when a job takes a concurrency slot."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted as the encoder reports a new position."""

    progress: int


class EncoderFallback(JobEvent):
    """Emitted when the hardware encoder is unavailable and the job restarts in software."""

    reason: str


class JobCompleted(JobEvent):
    """Emitted when the derived output is complete and the record is flagged ready."""

    encoder_kind: EncoderKind
    elapsed_seconds: float = 0.0


class JobFailed(JobEvent):
    """Emitted when a job terminates without a derived output."""

    error_message: str


class JobCancelled(JobEvent):
    """Emitted when a job is cancelled because its file was deleted."""

    pass


class FileUploaded(Event):
    """Emitted once an upload is durably stored (or matched an existing record)."""

    file_id: str
    display_name: str
    byte_size: int
    existing: bool = False


class FilesRemoved(Event):
    """Emitted after purge, expiry sweep or explicit deletion removed records."""

    file_ids: List[str] = Field(default_factory=list)
    reason: str
    set_name: Optional[str] = None
