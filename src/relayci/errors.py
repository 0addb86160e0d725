# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence


class RelayError(Exception):
    """Base class for errors that abort a run before any job is scheduled."""


@dataclass
class InvalidSpec(RelayError):
    """
    Malformed matrix/cache/dependency declaration.
    Raised at load, expansion or graph-build time.
    """
    message: str
    where: str | None = None

    def __str__(self) -> str:
        if self.where:
            return f"invalid pipeline ({self.where}): {self.message}"
        return f"invalid pipeline: {self.message}"


@dataclass
class CyclicDependency(RelayError):
    cycle: Sequence[str] = field(default_factory=list)

    def __str__(self) -> str:
        return "dependency cycle: " + " -> ".join(self.cycle)


@dataclass
class StepFailure(Exception):
    """A step exited non-zero. Recorded on the job instance, never fatal to the run."""
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
