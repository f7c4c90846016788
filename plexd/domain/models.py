import re
import threading
import time
from enum import Enum
from typing import Any, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

FILE_ID_RE = re.compile(r"^[0-9a-f]{32}$")

# Extension -> MIME type, used when an upload declares no specific type
MIME_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".mp4": "video/mp4",
    ".m4v": "video/x-m4v",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".ts": "video/mp2t",
    ".m3u8": "application/vnd.apple.mpegurl",
}

GENERIC_CONTENT_TYPE = "application/octet-stream"


def is_valid_file_id(file_id: str) -> bool:
    return bool(FILE_ID_RE.match(file_id or ""))


def now_ms() -> int:
    return int(time.time() * 1000)


class PlexdError(Exception):
    """Base class for errors raised by the media subsystem."""


class UploadError(PlexdError):
    """The upload stream failed; no record was created."""


class FileNotFoundInStore(PlexdError):
    """No record exists for the requested id."""


class InvalidFileId(PlexdError):
    """The id is not a well-formed file identifier."""


class JobStatus(str, Enum):
    QUEUED = "queued"
    TRANSCODING = "transcoding"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NONE = "none"  # No job and no derived output


class EncoderKind(str, Enum):
    HARDWARE = "hardware"
    SOFTWARE = "software"


class EncodeOutcome(str, Enum):
    """Result of a single encoder process run."""
    SUCCEEDED = "succeeded"
    ENCODER_UNAVAILABLE = "encoder_unavailable"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class DeleteMode(str, Enum):
    BOTH = "both"
    ORIGINAL = "original"
    DERIVED = "derived"


class FileRecord(BaseModel):
    """Persisted descriptor of one uploaded blob and its derived-output status.

    Field aliases match the on-disk ``metadata.json`` document.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: str = Field(alias="fileName")
    byte_size: int = Field(alias="size", ge=0)
    content_type: str = Field(default=GENERIC_CONTENT_TYPE, alias="contentType")
    saved_at: int = Field(default_factory=now_ms, alias="savedAt")  # epoch ms
    set_name: Optional[str] = Field(default=None, alias="setName")
    derived_ready: bool = Field(default=False, alias="derivedReady")
    derived_path: Optional[str] = Field(default=None, alias="derivedPath")
    dedupe_key: Tuple[str, int] = Field(default=("", 0), alias="dedupeKey")

    @model_validator(mode="before")
    @classmethod
    def fill_dedupe_key(cls, data: Any) -> Any:
        # Documents written before dedupe existed carry no key; derive it
        if isinstance(data, dict) and not data.get("dedupeKey") and not data.get("dedupe_key"):
            name = data.get("fileName", data.get("display_name", ""))
            size = data.get("size", data.get("byte_size", 0))
            data = {**data, "dedupeKey": (name, size)}
        return data

    @property
    def is_video(self) -> bool:
        return self.content_type.startswith("video/")

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.saved_at / 1000.0

    def to_document(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={"id"})
        data["dedupeKey"] = list(self.dedupe_key)
        return data


class TranscodeJob(BaseModel):
    """In-memory transcode job; owns the encoder process while it runs."""

    file_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    encoder_kind: EncoderKind = EncoderKind.HARDWARE
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None

    _process: Any = PrivateAttr(default=None)
    _cancel_event: threading.Event = PrivateAttr(default_factory=threading.Event)

    @property
    def process(self):
        return self._process

    def attach_process(self, process) -> None:
        self._process = process

    def detach_process(self) -> None:
        self._process = None

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED)
