"""Per-object re-encryption job and its state machine."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..data import ObjectRef, SealedObject


class JobState(str, Enum):
    PENDING = 'pending'
    DECRYPTING = 'decrypting'
    RESEALING = 'resealing'
    UPDATING = 'updating'
    DONE = 'done'
    FAILED = 'failed'


_TRANSITIONS = {
    JobState.PENDING: {JobState.DECRYPTING, JobState.DONE, JobState.FAILED},
    JobState.DECRYPTING: {JobState.RESEALING, JobState.FAILED},
    JobState.RESEALING: {JobState.UPDATING, JobState.DONE, JobState.FAILED},
    # conflict retry re-runs decrypt against the re-fetched object
    JobState.UPDATING: {JobState.DONE, JobState.FAILED, JobState.DECRYPTING},
    JobState.DONE: set(),
    JobState.FAILED: set(),
}


@dataclass
class ReencryptionJob:
    """Transient state of one object's migration within a run."""
    obj: SealedObject
    state: JobState = JobState.PENDING
    attempts: int = 0
    last_error: Optional[BaseException] = field(default=None, repr=False)
    history: list[JobState] = field(default_factory=list, repr=False)

    @property
    def ref(self) -> ObjectRef:
        return self.obj.ref

    @property
    def finished(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED)

    def transition(self, state: JobState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Job {self.ref}: invalid transition {self.state.value} -> {state.value}"
            )
        self.history.append(self.state)
        self.state = state

    def fail(self, error: BaseException) -> None:
        self.last_error = error
        if self.state is not JobState.FAILED:
            self.transition(JobState.FAILED)
