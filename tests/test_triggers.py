from __future__ import annotations

import pytest

from relayci.model import TriggerFilter
from relayci.triggers import branch_of, matches_branch, should_run

MAIN_ONLY = TriggerFilter(events={"push": ("main",), "pull_request": ("main",)})


def test_no_filter_accepts_everything():
    assert should_run(TriggerFilter(), "push", "refs/heads/anything")
    assert should_run(TriggerFilter(), "workflow_dispatch", "")


@pytest.mark.parametrize(
    "event, ref, base_ref, expected",
    [
        ("push", "refs/heads/main", None, True),
        ("push", "refs/heads/feature", None, False),
        ("push", "main", None, True),
        ("push", "refs/tags/v1.0", None, False),
        ("pull_request", "refs/pull/5/merge", "main", True),
        ("pull_request", "refs/pull/5/merge", "release", False),
        ("schedule", "refs/heads/main", None, False),
    ],
)
def test_branch_filters(event, ref, base_ref, expected):
    assert should_run(MAIN_ONLY, event, ref, base_ref=base_ref) is expected


def test_event_without_branches_accepts_any_branch():
    triggers = TriggerFilter(events={"push": ()})
    assert should_run(triggers, "push", "refs/heads/whatever")


def test_globs_and_negation():
    assert matches_branch("release/1.2", ["release/*"])
    assert not matches_branch("release/1.2-rc", ["release/*", "!release/*-rc"])
    assert matches_branch("feature", ["!main"])
    assert not matches_branch("main", ["!main"])


def test_branch_of():
    assert branch_of("refs/heads/a/b") == "a/b"
    assert branch_of("refs/pull/5/merge") is None
    assert branch_of("main") == "main"
