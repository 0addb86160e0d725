# triggers.py
# Decide whether an incoming event creates a run at all.
# Evaluated once, before admission to the concurrency governor.

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Optional, Sequence

from .model import TriggerFilter

PULL_REQUEST_EVENTS = ("pull_request", "pull_request_target")


def branch_of(ref: str) -> Optional[str]:
    """refs/heads/main -> main. Tags and other refs have no branch."""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    if ref.startswith("refs/"):
        return None
    return ref


def matches_branch(branch: str, patterns: Sequence[str]) -> bool:
    """
    Glob match with "!pattern" negation; later patterns override earlier ones.
    A list made only of negations starts from "match".
    """
    matched = all(p.startswith("!") for p in patterns)
    for pattern in patterns:
        if pattern.startswith("!"):
            if fnmatchcase(branch, pattern[1:]):
                matched = False
        elif fnmatchcase(branch, pattern):
            matched = True
    return matched


def should_run(
    triggers: TriggerFilter,
    event: str,
    ref: str,
    *,
    base_ref: str | None = None,
) -> bool:
    """
    push:          the pushed branch is matched against the patterns.
    pull_request:  the target (base) branch is matched; `ref` is refs/pull/N/merge.
    """
    if triggers.accepts_everything:
        return True
    if event not in triggers.events:
        return False

    patterns = triggers.events[event]
    if not patterns:
        return True

    target = base_ref if event in PULL_REQUEST_EVENTS and base_ref else ref
    branch = branch_of(target)
    if branch is None:
        return False
    return matches_branch(branch, patterns)
