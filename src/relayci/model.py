# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Matrix values as they appear in a definition: ubuntu-latest, 3.11, true ...
MatrixValue = Any
Assignment = Tuple[Tuple[str, MatrixValue], ...]


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    cached: bool = False            # cache-eligible step
    timeout: float | None = None    # seconds, overrides the run default


@dataclass(frozen=True)
class CachePolicy:
    """
    Cache declaration of a job.

    `key` and `restore_keys` are expression templates rendered per instance,
    e.g. "${{ runner.os }}-cargo-${{ hashFiles('Cargo.lock') }}".
    `paths` are archived into the blob after a successful cache-eligible step.
    """
    key: str
    restore_keys: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConcurrencyPolicy:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class TriggerFilter:
    """
    Events that create a run. Maps event name -> branch patterns.
    An empty pattern tuple accepts every branch for that event.
    """
    events: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def accepts_everything(self) -> bool:
        return not self.events


@dataclass(frozen=True)
class JobTemplate:
    """
    A CI job: steps + dependencies + matrix/cache metadata.

    `needs` names other templates; instances are matched by template name,
    independently of the matrix.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    matrix: Optional[Dict[str, Tuple[MatrixValue, ...]]] = None
    cache: Optional[CachePolicy] = None
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None

    @property
    def cache_steps(self) -> Tuple[int, ...]:
        """Indexes of cache-eligible steps (all steps when none is flagged)."""
        if self.cache is None:
            return ()
        flagged = tuple(i for i, s in enumerate(self.steps) if s.cached)
        return flagged or tuple(range(len(self.steps)))


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[JobTemplate, ...]
    concurrency: Optional[ConcurrencyPolicy] = None
    triggers: TriggerFilter = field(default_factory=TriggerFilter)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


def instance_id(name: str, assignment: Assignment) -> str:
    if not assignment:
        return name
    axes = ", ".join(f"{axis}={value}" for axis, value in assignment)
    return f"{name} ({axes})"


@dataclass
class JobInstance:
    """One concrete job to run: a template plus one matrix assignment."""
    template: JobTemplate
    assignment: Assignment = ()
    status: JobStatus = JobStatus.PENDING

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def id(self) -> str:
        return instance_id(self.template.name, self.assignment)

    @property
    def matrix(self) -> Dict[str, MatrixValue]:
        return dict(self.assignment)

    def transition(self, status: JobStatus) -> None:
        if self.status.terminal:
            raise RuntimeError(f"{self.id} is already {self.status.value}")
        self.status = status


@dataclass(frozen=True)
class StepResult:
    name: str
    exit_code: int | None
    output: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class InstanceResult:
    id: str
    job: str
    matrix: Dict[str, MatrixValue]
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    reason: str | None = None   # failure or cancellation reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job": self.job,
            "matrix": dict(self.matrix),
            "status": self.status.value,
            "reason": self.reason,
            "steps": [
                {
                    "name": s.name,
                    "exit_code": s.exit_code,
                    "duration": round(s.duration, 3),
                    "output": s.output,
                }
                for s in self.steps
            ],
        }


@dataclass(frozen=True)
class RunReport:
    """Final, immutable result of one run, ordered like the matrix expansion."""
    run_id: str
    results: Tuple[InstanceResult, ...]

    def __getitem__(self, instance: str) -> InstanceResult:
        for r in self.results:
            if r.id == instance:
                return r
        raise KeyError(instance)

    def statuses(self) -> Dict[str, JobStatus]:
        return {r.id: r.status for r in self.results}

    def count(self, status: JobStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    def to_dict(self) -> Dict[str, Any]:
        from .report import aggregate

        return {
            "run_id": self.run_id,
            "verdict": aggregate(self).value,
            "jobs": [r.to_dict() for r in self.results],
        }


def as_tuple(values: Optional[List[Any]]) -> Tuple[Any, ...]:
    return tuple(values or ())
