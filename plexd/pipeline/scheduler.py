"""FIFO transcode queue with a bounded set of concurrently running jobs.

All queue, active-set and job-table mutations happen under one Condition.
Admission (``dispatch``) and slot release run inside that critical section, so
two concurrent callers can never admit more than ``max_concurrent`` jobs and a
freed slot is handed to the next queued id before the lock is released.

Encoding itself runs on a ThreadPoolExecutor sized to ``max_concurrent``; each
pool thread drives one external encoder process through the worker.
"""

import concurrent.futures
import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from plexd.domain.events import JobCancelled, JobQueued, JobStarted
from plexd.domain.models import JobStatus, TranscodeJob
from plexd.infrastructure.event_bus import EventBus


class TranscodeScheduler:
    """Owns the queue, the active set and the live job table.

    Args:
        worker: Object with ``run(job)`` (drives a job to a terminal state) and
            ``fail(job, reason)`` (terminal failure with output cleanup).
        max_concurrent: Number of concurrency slots.
        event_bus: EventBus for job lifecycle events.
        enabled: False when encoder tooling is unavailable; enqueue then refuses.
    """

    def __init__(self, worker, max_concurrent: int, event_bus: EventBus, enabled: bool = True):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.worker = worker
        self.max_concurrent = max_concurrent
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Condition()
        self._queue: Deque[str] = deque()
        self._active: Set[str] = set()
        self._jobs: Dict[str, TranscodeJob] = {}
        self._failures: Dict[str, str] = {}
        self._enabled = enabled
        self._accepting = True
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self.peak_active = 0

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled and self._accepting

    def disable(self, reason: str) -> None:
        with self._lock:
            self._enabled = False
        self.logger.warning(f"Transcoding disabled: {reason}")

    def _ensure_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_concurrent,
                thread_name_prefix="transcode",
            )
        return self._executor

    def enqueue(self, file_id: str) -> bool:
        """Appends file_id to the queue. No-op (True) if already queued or active.

        Returns False when transcoding is disabled or shutting down.
        """
        with self._lock:
            if not (self._enabled and self._accepting):
                return False
            if file_id in self._jobs:
                return True
            job = TranscodeJob(file_id=file_id)
            self._jobs[file_id] = job
            self._queue.append(file_id)
            self._failures.pop(file_id, None)
            self.logger.info(f"TRANSCODE_QUEUED: {file_id} position={len(self._queue)}")
            self.event_bus.publish(JobQueued(file_id=file_id, position=len(self._queue)))
            self.dispatch()
        return True

    def dispatch(self) -> int:
        """Admits queued ids in FIFO order while slots are free. Returns how many were started.

        Called after every enqueue and every slot release. The Condition wraps an
        RLock so callers already holding it may re-enter.
        """
        with self._lock:
            return len(self._admit_locked())

    def _admit_locked(self) -> List[TranscodeJob]:
        started = []
        while self._accepting and len(self._active) < self.max_concurrent and self._queue:
            file_id = self._queue.popleft()
            job = self._jobs[file_id]
            self._active.add(file_id)
            self.peak_active = max(self.peak_active, len(self._active))
            job.status = JobStatus.TRANSCODING
            self.event_bus.publish(JobStarted(file_id=file_id))
            self._ensure_executor().submit(self._run_job, job)
            started.append(job)
        return started

    def _run_job(self, job: TranscodeJob) -> None:
        try:
            self.worker.run(job)
        except Exception as e:
            self.logger.error(f"Exception transcoding {job.file_id}: {e}")
            try:
                self.worker.fail(job, f"Exception: {e}")
            except Exception as cleanup_error:
                self.logger.warning(f"Cleanup after exception failed for {job.file_id}: {cleanup_error}")
                job.status = JobStatus.FAILED
                job.error_message = f"Exception: {e}"
        finally:
            self._release(job)

    def _release(self, job: TranscodeJob) -> None:
        with self._lock:
            if not job.is_terminal:
                job.status = JobStatus.FAILED
                job.error_message = job.error_message or "Transcode finished but status not updated"
            if job.status == JobStatus.FAILED:
                self._failures[job.file_id] = job.error_message or "failed"
            self._active.discard(job.file_id)
            if self._jobs.get(job.file_id) is job:
                del self._jobs[job.file_id]
            self._lock.notify_all()
            self.dispatch()

    def cancel(self, file_id: str, timeout: Optional[float] = 30.0) -> bool:
        """Cancels a queued or active job and waits until its slot is released.

        The active job's encoder is terminated and its partial output removed
        by the worker before the slot frees. Returns False if there was no job
        or the wait timed out.
        """
        with self._lock:
            self._failures.pop(file_id, None)
            job = self._jobs.get(file_id)
            if job is None:
                return False

            if file_id not in self._active:
                self._queue.remove(file_id)
                del self._jobs[file_id]
                job.cancel()
                job.status = JobStatus.CANCELLED
                self.logger.info(f"TRANSCODE_CANCEL: {file_id} (queued)")
                self.event_bus.publish(JobCancelled(file_id=file_id))
                self._lock.notify_all()
                return True

            job.cancel()
            self.logger.info(f"TRANSCODE_CANCEL: {file_id} (active)")
            deadline = None if timeout is None else time.monotonic() + timeout
            while file_id in self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self.logger.warning(f"TRANSCODE_CANCEL: {file_id} still running after {timeout}s")
                    return False
                self._lock.wait(remaining)
            self._failures.pop(file_id, None)
        return True

    def job_view(self, file_id: str) -> Optional[Tuple[JobStatus, int]]:
        with self._lock:
            job = self._jobs.get(file_id)
            if job is None:
                return None
            return job.status, job.progress

    def last_failure(self, file_id: str) -> Optional[str]:
        with self._lock:
            return self._failures.get(file_id)

    def forget(self, file_id: str) -> None:
        with self._lock:
            self._failures.pop(file_id, None)

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            return {
                file_id: {
                    "status": job.status.value,
                    "progress": job.progress,
                    "encoder": job.encoder_kind.value,
                }
                for file_id, job in self._jobs.items()
            }

    def queued_ids(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    def active_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until queue and active set are empty."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self._queue or self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._lock.wait(remaining)
        return True

    def shutdown(self, wait: bool = True) -> None:
        """Stops admitting, drops queued jobs and cancels active ones."""
        with self._lock:
            self._accepting = False
            for file_id in list(self._queue):
                job = self._jobs.pop(file_id, None)
                if job is not None:
                    job.cancel()
                    job.status = JobStatus.CANCELLED
            self._queue.clear()
            active_jobs = [self._jobs[file_id] for file_id in self._active if file_id in self._jobs]
        for job in active_jobs:
            job.cancel()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self.logger.info("Transcode scheduler stopped")
