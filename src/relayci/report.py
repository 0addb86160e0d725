# report.py
from __future__ import annotations

import enum
import json
from pathlib import Path

from .model import JobStatus, RunReport


class Verdict(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 3
EXIT_INVALID = 4   # load / graph errors, nothing was run

_EXIT_CODES = {
    Verdict.SUCCESS: EXIT_SUCCESS,
    Verdict.FAILURE: EXIT_FAILURE,
    Verdict.CANCELLED: EXIT_CANCELLED,
}


def aggregate(report: RunReport) -> Verdict:
    """
    Overall verdict of a run:
      - any FAILED instance        -> FAILURE
      - else any CANCELLED         -> CANCELLED
      - everything SUCCEEDED       -> SUCCESS
    """
    statuses = [r.status for r in report.results]
    if any(s is JobStatus.FAILED for s in statuses):
        return Verdict.FAILURE
    if any(s is JobStatus.CANCELLED for s in statuses):
        return Verdict.CANCELLED
    if all(s is JobStatus.SUCCEEDED for s in statuses):
        return Verdict.SUCCESS
    # non-terminal instances only show up if the scheduler was interrupted
    return Verdict.CANCELLED


def exit_code(verdict: Verdict) -> int:
    return _EXIT_CODES[verdict]


def write_json(report: RunReport, path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return out
