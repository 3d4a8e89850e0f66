# preflight/lifecycle.py
"""
Upload job state machine.

    uploading -> uploaded -> processing -> completed | failed

``completed`` and ``failed`` are sinks. Every status write in the job store
is checked against ``TRANSITIONS``.
"""
import enum
from typing import Dict, FrozenSet


class JobStatus(str, enum.Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class BucketKind(str, enum.Enum):
    """Which of the two buckets an object lives in. Physical names come from settings."""
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.UPLOADING: frozenset({JobStatus.UPLOADED}),
    JobStatus.UPLOADED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# statuses an anonymous job can be in while still waiting for its owner to sign in
PENDING_STATUSES = frozenset({JobStatus.UPLOADING, JobStatus.UPLOADED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]


def predecessors(target: JobStatus) -> FrozenSet[JobStatus]:
    """All statuses from which ``target`` may be entered."""
    target = JobStatus(target)
    return frozenset(src for src, dsts in TRANSITIONS.items() if target in dsts)
