# run_context.py
import hashlib
import threading
import time
import uuid
from collections import deque
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional

from labs_client import OperationHandle
from settings import AutomationLimits


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL = {JobStatus.SUCCESS, JobStatus.ERROR}

# queued -> error only happens when a fatal session error drains the queue
_TRANSITIONS = {
    JobStatus.IDLE: {JobStatus.QUEUED},
    JobStatus.QUEUED: {JobStatus.SUBMITTING, JobStatus.ERROR},
    JobStatus.SUBMITTING: {JobStatus.PROCESSING, JobStatus.QUEUED, JobStatus.ERROR},
    JobStatus.PROCESSING: {JobStatus.SUCCESS, JobStatus.QUEUED, JobStatus.ERROR},
    JobStatus.SUCCESS: set(),
    JobStatus.ERROR: set(),
}


class InvalidTransition(Exception):
    pass


def derive_job_id(text: str, index: int) -> str:
    digest = hashlib.sha1(f"{index}:{text}".encode("utf-8")).hexdigest()
    return f"prompt-{index + 1}-{digest[:10]}"


class Job:
    def __init__(self, job_id: str, prompt_text: str, index: int = 0):
        self.id = job_id
        self.prompt_text = prompt_text
        self.index = index
        self.retry_count = 0
        self.status = JobStatus.IDLE
        self.handle: Optional[OperationHandle] = None
        self.artifact_url: Optional[str] = None
        self.error: Optional[str] = None
        self.processing_since: Optional[float] = None

    def transition(self, new: JobStatus):
        if new not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"job {self.id}: {self.status.value} -> {new.value}")
        self.status = new

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "promptText": self.prompt_text,
            "index": self.index,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "operationName": self.handle.operation_name if self.handle else None,
            "sceneId": self.handle.scene_id if self.handle else None,
            "artifactUrl": self.artifact_url,
            "error": self.error,
        }


class CancellationFlag:
    """Process-wide stop switch, checked by the loops at the top of each iteration."""

    def __init__(self):
        self._event = threading.Event()

    def set(self):
        self._event.set()

    def clear(self):
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()


class AutomationRunContext:
    """
    Shared state of one automation run: the pending queue and the in-flight
    map. Every method runs under one lock and never awaits, so a job id is
    always in exactly one of the two collections (or in neither once it is
    terminal).
    """

    def __init__(
        self,
        jobs: Iterable[Job],
        limits: AutomationLimits,
        stop_flag: Optional[CancellationFlag] = None,
        run_id: Optional[str] = None,
    ):
        self.run_id = run_id or uuid.uuid4().hex
        self.limits = limits
        self.stop_flag = stop_flag or CancellationFlag()
        self.fatal_reason: Optional[str] = None
        self.max_in_flight_seen = 0
        self.jobs: Dict[str, Job] = {}
        self._queue: Deque[Job] = deque()
        self._in_flight: Dict[str, Job] = {}
        self._lock = threading.Lock()

        for job in jobs:
            if job.id in self.jobs:
                raise ValueError(f"duplicate job id: {job.id}")
            job.transition(JobStatus.QUEUED)
            self.jobs[job.id] = job
            self._queue.append(job)

    # ---- Submission side ----
    def take_next(self) -> Optional[Job]:
        """Move the queue head into the in-flight map, if there is room."""
        with self._lock:
            if not self._queue or len(self._in_flight) >= self.limits.max_concurrent_sessions:
                return None
            job = self._queue.popleft()
            job.transition(JobStatus.SUBMITTING)
            self._in_flight[job.id] = job
            self.max_in_flight_seen = max(self.max_in_flight_seen, len(self._in_flight))
            return job

    def mark_processing(self, job: Job, handle: OperationHandle):
        with self._lock:
            job.transition(JobStatus.PROCESSING)
            job.handle = handle
            job.processing_since = time.monotonic()

    # ---- Outcomes ----
    def complete(self, job: Job, artifact_url: str):
        with self._lock:
            job.transition(JobStatus.SUCCESS)
            job.artifact_url = artifact_url
            job.error = None
            self._in_flight.pop(job.id, None)

    def requeue_for_retry(self, job: Job) -> int:
        """Put a failed job back at the head of the queue. Returns the attempt number."""
        with self._lock:
            self._in_flight.pop(job.id, None)
            job.transition(JobStatus.QUEUED)
            job.retry_count += 1
            job.handle = None
            job.processing_since = None
            self._queue.appendleft(job)
            return job.retry_count

    def fail(self, job: Job, reason: str):
        with self._lock:
            job.transition(JobStatus.ERROR)
            job.error = reason
            self._in_flight.pop(job.id, None)
            if job in self._queue:
                self._queue.remove(job)

    def fail_pending(self, reason: str) -> List[Job]:
        """Terminate everything still queued or in flight (fatal run errors)."""
        with self._lock:
            pending = list(self._queue) + list(self._in_flight.values())
            self._queue.clear()
            self._in_flight.clear()
            for job in pending:
                job.transition(JobStatus.ERROR)
                job.error = reason
            return pending

    # ---- Queries ----
    def processing_jobs(self) -> List[Job]:
        with self._lock:
            return [j for j in self._in_flight.values() if j.status == JobStatus.PROCESSING and j.handle]

    def is_drained(self) -> bool:
        with self._lock:
            return not self._queue and not self._in_flight

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def queued_ids(self) -> List[str]:
        with self._lock:
            return [j.id for j in self._queue]

    def in_flight_ids(self) -> List[str]:
        with self._lock:
            return list(self._in_flight)

    # ---- Stopping ----
    def abort(self, reason: str):
        if self.fatal_reason is None:
            self.fatal_reason = reason

    def should_stop(self) -> bool:
        return self.stop_flag.is_set() or self.fatal_reason is not None

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "runId": self.run_id,
                "queued": [j.id for j in self._queue],
                "inFlight": list(self._in_flight),
                "fatalReason": self.fatal_reason,
                "cancelled": self.stop_flag.is_set(),
                "jobs": [j.to_dict() for j in self.jobs.values()],
            }
