# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import (
    CachePolicy,
    ConcurrencyPolicy,
    JobTemplate,
    PipelineDefinition,
    Step,
    TriggerFilter,
)


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    cached: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, cached=cached, timeout=timeout)


# ---------------------------------------------------------------------
# Matrix / cache / concurrency helpers
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix axes for a job, in declaration order.

    Example:
        job("test", sh("Run", "pytest"), matrix=matrix(os=["linux", "mac"], py=["3.11", "3.12"]))
    """
    def __init__(self, axes: Mapping[str, Iterable[Any]]):
        self.axes: Dict[str, tuple] = {k: tuple(v) for k, v in axes.items()}

    def __repr__(self) -> str:
        return f"Matrix({self.axes!r})"


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(axes)


def cache(key: str, *restore_keys: str, paths: Sequence[str] = ()) -> CachePolicy:
    """cache("${{ runner.os }}-pip-${{ hashFiles('requirements.txt') }}", "${{ runner.os }}-pip-", paths=[".venv"])"""
    return CachePolicy(key=key, restore_keys=tuple(restore_keys), paths=tuple(paths))


def concurrency(group: str, *, cancel_in_progress: bool = True) -> ConcurrencyPolicy:
    return ConcurrencyPolicy(group=group, cancel_in_progress=cancel_in_progress)


def _matrix_axes(value: Matrix | Mapping[str, Iterable[Any]] | None) -> Optional[Dict[str, tuple]]:
    if value is None:
        return None
    if isinstance(value, Matrix):
        return dict(value.axes)
    return {k: tuple(v) for k, v in value.items()}


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Matrix | Mapping[str, Iterable[Any]] | None = None,
    cache: Optional[CachePolicy] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        matrix=_matrix_axes(matrix),
        cache=cache,
        env={k: str(v) for k, v in (env or {}).items()},
        runs_on=runs_on,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: Optional[Dict[str, tuple]] = None
        self._cache: Optional[CachePolicy] = None
        self._runs_on: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, *, cached: bool = False,
                    timeout: float | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, cached=cached, timeout=timeout))
        return self

    def with_env(self, **env):
        # force values to str for stable key rendering + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, **axes: Iterable[Any]):
        self._matrix = {k: tuple(v) for k, v in axes.items()}
        return self

    def with_cache(self, key: str, *restore_keys: str, paths: Sequence[str] = ()):
        self._cache = cache(key, *restore_keys, paths=paths)
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return JobTemplate(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            matrix=self._matrix,
            cache=self._cache,
            env=dict(self._env),
            runs_on=self._runs_on,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline / workflow helpers
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: JobTemplate,
    on: Optional[Mapping[str, Sequence[str]]] = None,
    concurrency: Optional[ConcurrencyPolicy] = None,
    env: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """
    pipeline("CI", job(...), job(...),
             on={"push": ["main"], "pull_request": ["main"]},
             concurrency=concurrency("${{ github.ref }}"))
    """
    triggers = TriggerFilter(events={k: tuple(v) for k, v in (on or {}).items()})
    return PipelineDefinition(
        name=name,
        jobs=tuple(jobs),
        concurrency=concurrency,
        triggers=triggers,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """
    Workflow definition helper for files that only list jobs:

        from relayci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )
    """
    return list(jobs)
