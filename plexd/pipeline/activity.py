import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from plexd.domain.events import (
    EncoderFallback,
    FilesRemoved,
    FileUploaded,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobQueued,
    JobStarted,
)
from plexd.infrastructure.event_bus import EventBus


class ActivityState:
    """Thread-safe counters and recent job events for the activity feed."""

    def __init__(self, activity_feed_max_items: int = 20):
        self._lock = threading.RLock()

        # Counters
        self.uploaded_count = 0
        self.deduplicated_count = 0
        self.queued_count = 0
        self.started_count = 0
        self.completed_count = 0
        self.failed_count = 0
        self.cancelled_count = 0
        self.fallback_count = 0
        self.removed_count = 0

        self.recent_events: deque = deque(maxlen=activity_feed_max_items)
        self.started_at = datetime.now()
        self.last_action: str = ""
        self.last_action_time: Optional[datetime] = None

    def record(self, kind: str, file_id: Optional[str] = None, **details: Any) -> None:
        with self._lock:
            entry = {"time": datetime.now().isoformat(timespec="seconds"), "event": kind}
            if file_id:
                entry["fileId"] = file_id
            entry.update({k: v for k, v in details.items() if v is not None})
            self.recent_events.appendleft(entry)

    def set_last_action(self, message: str) -> None:
        with self._lock:
            self.last_action = message
            self.last_action_time = datetime.now()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": {
                    "uploaded": self.uploaded_count,
                    "deduplicated": self.deduplicated_count,
                    "queued": self.queued_count,
                    "started": self.started_count,
                    "completed": self.completed_count,
                    "failed": self.failed_count,
                    "cancelled": self.cancelled_count,
                    "fallbacks": self.fallback_count,
                    "removed": self.removed_count,
                },
                "recent": list(self.recent_events),
                "lastAction": self.last_action,
                "since": self.started_at.isoformat(timespec="seconds"),
            }


class ActivityManager:
    """Subscribes to EventBus and updates ActivityState."""

    def __init__(self, bus: EventBus, state: ActivityState):
        self.bus = bus
        self.state = state
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(FileUploaded, self.on_file_uploaded)
        self.bus.subscribe(JobQueued, self.on_job_queued)
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(EncoderFallback, self.on_encoder_fallback)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)
        self.bus.subscribe(JobCancelled, self.on_job_cancelled)
        self.bus.subscribe(FilesRemoved, self.on_files_removed)

    def on_file_uploaded(self, event: FileUploaded):
        with self.state._lock:
            if event.existing:
                self.state.deduplicated_count += 1
            else:
                self.state.uploaded_count += 1
        self.state.set_last_action(f"Uploaded {event.display_name}")

    def on_job_queued(self, event: JobQueued):
        with self.state._lock:
            self.state.queued_count += 1
        self.state.record("queued", event.file_id, position=event.position)

    def on_job_started(self, event: JobStarted):
        with self.state._lock:
            self.state.started_count += 1
        self.state.record("started", event.file_id)

    def on_encoder_fallback(self, event: EncoderFallback):
        with self.state._lock:
            self.state.fallback_count += 1
        self.state.record("fallback", event.file_id, reason=event.reason)

    def on_job_completed(self, event: JobCompleted):
        with self.state._lock:
            self.state.completed_count += 1
        self.state.record(
            "completed",
            event.file_id,
            encoder=event.encoder_kind.value,
            elapsed=round(event.elapsed_seconds, 2),
        )

    def on_job_failed(self, event: JobFailed):
        with self.state._lock:
            self.state.failed_count += 1
        self.state.record("failed", event.file_id, reason=event.error_message)

    def on_job_cancelled(self, event: JobCancelled):
        with self.state._lock:
            self.state.cancelled_count += 1
        self.state.record("cancelled", event.file_id)

    def on_files_removed(self, event: FilesRemoved):
        with self.state._lock:
            self.state.removed_count += len(event.file_ids)
        label = f" from set {event.set_name}" if event.set_name else ""
        self.state.set_last_action(f"Removed {len(event.file_ids)} file(s) ({event.reason}){label}")

    def recent(self) -> List[Dict[str, Any]]:
        return self.state.snapshot()["recent"]
