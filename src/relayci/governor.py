# governor.py
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional


# finished or superseded run ids remembered per group; older ones are forgotten
RETIRED_HISTORY = 256


class Admission(str, enum.Enum):
    PROCEED = "proceed"
    SUPERSEDED = "superseded"


class CancelToken:
    """
    Cooperative cancellation signal for one run.
    The executor checks it at step boundaries; it never interrupts a step.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation. Returns False if the token was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self.cancelled else "active"
        return f"CancelToken({self.run_id!r}, {state})"


@dataclass
class RunGroup:
    key: str
    active: Optional[str] = None
    pending: Optional[str] = None           # queued run (cancel_in_progress=False)
    retired: Dict[str, None] = field(default_factory=dict)   # insertion-ordered, bounded
    cond: threading.Condition = field(default_factory=threading.Condition, repr=False)


class ConcurrencyGovernor:
    """
    At most one active run per concurrency group.

    State per group: Idle -> Active(run). Admitting a newer run either
    supersedes the active one (cancel_in_progress=True, the old run's token
    fires once) or waits for it to be released (cancel_in_progress=False,
    where a newer waiter supersedes an older waiter).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[str, RunGroup] = {}
        self._tokens: Dict[str, CancelToken] = {}

    def _group(self, key: str) -> RunGroup:
        with self._lock:
            group = self._groups.get(key)
            if group is None:
                group = self._groups[key] = RunGroup(key=key)
            return group

    def token(self, run_id: str) -> CancelToken:
        with self._lock:
            tok = self._tokens.get(run_id)
            if tok is None:
                tok = self._tokens[run_id] = CancelToken(run_id)
            return tok

    @staticmethod
    def _mark_retired(group: RunGroup, run_id: str) -> None:
        group.retired[run_id] = None
        while len(group.retired) > RETIRED_HISTORY:
            del group.retired[next(iter(group.retired))]

    def _retire(self, group: RunGroup, run_id: str, by: str) -> None:
        self._mark_retired(group, run_id)
        self.token(run_id).cancel(f"superseded by {by}")

    def admit(
        self,
        group_key: str,
        run_id: str,
        *,
        cancel_in_progress: bool = True,
        timeout: float | None = None,
    ) -> Admission:
        group = self._group(group_key)
        with group.cond:
            if group.active == run_id:
                return Admission.PROCEED
            if run_id in group.retired:
                return Admission.SUPERSEDED

            if group.active is None and group.pending is None:
                group.active = run_id
                return Admission.PROCEED

            if cancel_in_progress:
                if group.active is not None:
                    self._retire(group, group.active, by=run_id)
                if group.pending is not None:
                    self._retire(group, group.pending, by=run_id)
                    group.pending = None
                group.active = run_id
                group.cond.notify_all()
                return Admission.PROCEED

            if group.pending is not None:
                self._retire(group, group.pending, by=run_id)
            group.pending = run_id
            group.cond.notify_all()

            done = group.cond.wait_for(
                lambda: group.pending != run_id or group.active is None,
                timeout=timeout,
            )
            if group.pending != run_id:
                return Admission.SUPERSEDED
            if not done:
                group.pending = None
                self._retire(group, run_id, by="admission timeout")
                return Admission.SUPERSEDED

            group.pending = None
            group.active = run_id
            return Admission.PROCEED

    def release(self, group_key: str, run_id: str) -> None:
        """
        Mark run_id as finished; the group becomes idle if it was active.
        The run's token is dropped, so call this once the run has stopped.
        """
        group = self._group(group_key)
        with group.cond:
            if group.active == run_id:
                group.active = None
                group.cond.notify_all()
            self._mark_retired(group, run_id)
        self.forget(run_id)

    def forget(self, run_id: str) -> None:
        """Drop the token of a finished run."""
        with self._lock:
            self._tokens.pop(run_id, None)

    def active(self, group_key: str) -> Optional[str]:
        with self._lock:
            group = self._groups.get(group_key)
        if group is None:
            return None
        with group.cond:
            return group.active

    def groups(self) -> Dict[str, Optional[str]]:
        with self._lock:
            groups = list(self._groups.values())
        out: Dict[str, Optional[str]] = {}
        for g in groups:
            with g.cond:
                out[g.key] = g.active
        return out
