# runner.py
from __future__ import annotations

import os
import platform
import subprocess
import tarfile
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import settings
from .cache import CacheKey, CacheStore, cache_key_for, extract
from .dag import JobGraph, build_dag
from .errors import StepFailure
from .expressions import render
from .governor import Admission, CancelToken, ConcurrencyGovernor
from .loader import validate
from .matrix import expand_all
from .model import (
    InstanceResult,
    JobInstance,
    JobStatus,
    PipelineDefinition,
    RunReport,
    Step,
    StepResult,
)
from .triggers import should_run
from .ui.console import Console, get_console

# exit code reported for a step killed by its timeout (same as coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124

# (command, cwd, env, timeout) -> (exit_code, output)
StepExecutor = Callable[[str, Path, Dict[str, str], Optional[float]], Tuple[int, str]]


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

class ShellExecutor:
    """Runs a step command through the host shell and captures its output."""

    def __init__(self, output_tail: int = settings.OUTPUT_TAIL):
        self.output_tail = output_tail

    def __call__(
        self,
        command: str,
        cwd: Path,
        env: Dict[str, str],
        timeout: Optional[float],
    ) -> Tuple[int, str]:
        full_env = os.environ.copy()
        full_env.update(env)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd),
                env=full_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            out = e.output or ""
            if isinstance(out, bytes):
                out = out.decode("utf-8", errors="replace")
            out += f"\nstep timed out after {timeout}s"
            return TIMEOUT_EXIT_CODE, out[-self.output_tail:]
        return proc.returncode, (proc.stdout or "")[-self.output_tail:]


def host_os() -> str:
    """Runner OS name in the form cache keys usually embed."""
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system)


def instance_context(
    instance: JobInstance,
    *,
    env: Mapping[str, str],
    github: Mapping[str, str],
    root: Path,
) -> Dict[str, Any]:
    """Expression context for one instance: matrix, env, runner, github, job."""
    ctx: Dict[str, Any] = {
        "matrix": instance.matrix,
        "github": dict(github),
        "runner": {"os": host_os(), "arch": platform.machine()},
        "job": {"name": instance.name, "id": instance.id},
    }
    merged_env = dict(env)
    merged_env.update(instance.template.env)
    ctx["env"] = {k: render(str(v), ctx, root=root) for k, v in merged_env.items()}
    if instance.template.runs_on:
        ctx["runner"]["label"] = render(instance.template.runs_on, ctx, root=root)
    return ctx


# ----------------------------------------------------------------------
# One job instance
# ----------------------------------------------------------------------

class _InstanceRun:
    """Executes the steps of one job instance on the current worker thread."""

    def __init__(
        self,
        instance: JobInstance,
        context: Dict[str, Any],
        *,
        root: Path,
        cache: Optional[CacheStore],
        token: CancelToken,
        executor: StepExecutor,
        step_timeout: Optional[float],
        console: Console,
    ):
        self.instance = instance
        self.template = instance.template
        self.context = context
        self.root = root
        self.cache = cache
        self.token = token
        self.executor = executor
        self.step_timeout = step_timeout
        self.console = console
        self.steps: List[StepResult] = []
        self.exact_hit = False

    def _result(self, status: JobStatus, reason: str | None = None) -> InstanceResult:
        return InstanceResult(
            id=self.instance.id,
            job=self.instance.name,
            matrix=self.instance.matrix,
            status=status,
            steps=tuple(self.steps),
            reason=reason,
        )

    def _restore(self, key: CacheKey) -> None:
        assert self.cache is not None
        entry = self.cache.resolve(key)
        if entry is None:
            self.console.print_cache_miss(self.instance.id, key.primary)
            return
        try:
            extract(entry, self.root)
        except (tarfile.TarError, OSError) as e:
            self.console.print_info(f"[{self.instance.id}] CACHE: restore failed for {entry.key}: {e}")
            return
        self.exact_hit = entry.key == key.primary
        self.console.print_cache_hit(self.instance.id, entry.key, exact=self.exact_hit)

    def _save(self, key: CacheKey) -> None:
        assert self.cache is not None and self.template.cache is not None
        if self.exact_hit:
            return
        try:
            entry = self.cache.save_paths(key.primary, self.template.cache.paths, self.root)
        except (tarfile.TarError, OSError) as e:
            self.console.print_info(f"[{self.instance.id}] CACHE: save failed for {key.primary}: {e}")
            return
        self.console.print_cache_saved(self.instance.id, entry.key)

    def _run_step(self, step: Step) -> StepResult:
        command = render(step.run, self.context, root=self.root)
        cwd = (self.root / (step.cwd or ".")).resolve()
        self.console.print_step(self.instance.id, step.name)

        if not cwd.is_dir():
            return StepResult(name=step.name, exit_code=None, output=f"cwd not found: {cwd}")

        timeout = step.timeout if step.timeout is not None else self.step_timeout
        started = time.monotonic()
        code, output = self.executor(command, cwd, self.context["env"], timeout)
        result = StepResult(name=step.name, exit_code=code, output=output, duration=time.monotonic() - started)

        if code != 0:
            failure = StepFailure(job=self.instance.id, step=step.name, cmd=command, exit_code=code)
            self.console.print_debug(str(failure))
        return result

    def __call__(self) -> InstanceResult:
        self.console.print_job_start(self.instance.id)

        key: Optional[CacheKey] = None
        eligible = self.template.cache_steps
        if self.cache is not None and self.template.cache is not None:
            key = cache_key_for(self.template.cache, self.context, root=self.root)

        for idx, step in enumerate(self.template.steps):
            # steps are never interrupted; a superseded run stops between them
            if self.token.cancelled:
                return self._result(JobStatus.CANCELLED, self.token.reason)

            if key is not None and idx == eligible[0]:
                self._restore(key)

            result = self._run_step(step)
            self.steps.append(result)
            if not result.ok:
                self.console.print_step_failed(self.instance.id, step.name, result.exit_code, result.output)
                if result.exit_code is None:
                    return self._result(JobStatus.FAILED, f"step '{step.name}': {result.output}")
                return self._result(JobStatus.FAILED, f"step '{step.name}' exited {result.exit_code}")

            # superseded while this step ran
            if self.token.cancelled:
                return self._result(JobStatus.CANCELLED, self.token.reason)

            if key is not None and idx == eligible[-1]:
                self._save(key)

        return self._result(JobStatus.SUCCEEDED)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def default_workers() -> int:
    return settings.WORKERS or os.cpu_count() or 1


def run_pipeline(
    graph: JobGraph,
    *,
    run_id: str,
    workers: Optional[int] = None,
    cache: Optional[CacheStore] = None,
    token: Optional[CancelToken] = None,
    executor: Optional[StepExecutor] = None,
    root: str | Path = ".",
    env: Optional[Mapping[str, str]] = None,
    github: Optional[Mapping[str, str]] = None,
    step_timeout: Optional[float] = settings.STEP_TIMEOUT,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Run every instance of the graph on a bounded worker pool.

    - ready instances (all dependencies SUCCEEDED) are submitted as soon as
      they unlock; execution order among them is unspecified
    - a failing step fails only its own instance
    - instances whose dependency FAILED or was CANCELLED become CANCELLED
      without running
    - once the token is cancelled nothing new is scheduled; running
      instances stop at their next step boundary
    """
    root_p = Path(root).resolve()
    console = console or get_console()
    token = token or CancelToken(run_id)
    executor = executor or ShellExecutor()
    workers = max(1, workers or default_workers())
    env = env or {}
    github = github or {}

    results: Dict[str, InstanceResult] = {}

    def finish(inst: JobInstance, result: InstanceResult) -> None:
        inst.transition(result.status)
        results[inst.id] = result
        console.print_job_finished(inst.id, result.status, result.reason)

    def skip(inst_id: str, reason: str) -> None:
        inst = graph.instances[inst_id]
        finish(inst, InstanceResult(
            id=inst.id, job=inst.name, matrix=inst.matrix, status=JobStatus.CANCELLED, reason=reason,
        ))

    in_flight: Dict[Future, str] = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"relayci-{run_id}") as pool:
        while True:
            if token.cancelled:
                for inst in graph:
                    if inst.status is JobStatus.PENDING:
                        skip(inst.id, token.reason or "cancelled")

            # fail-fast propagation, repeated until no new instance is blocked
            blocked = graph.blocked()
            while blocked:
                for inst_id in blocked:
                    bad = sorted(
                        d for d in graph.dependencies(inst_id)
                        if graph.instances[d].status in (JobStatus.FAILED, JobStatus.CANCELLED)
                    )
                    dep = graph.instances[bad[0]]
                    skip(inst_id, f"dependency {dep.id} {dep.status.value}")
                blocked = graph.blocked()

            if not token.cancelled:
                for inst_id in graph.ready():
                    inst = graph.instances[inst_id]
                    inst.transition(JobStatus.RUNNING)
                    ctx = instance_context(inst, env=env, github=github, root=root_p)
                    job = _InstanceRun(
                        inst, ctx,
                        root=root_p, cache=cache, token=token, executor=executor,
                        step_timeout=step_timeout, console=console,
                    )
                    in_flight[pool.submit(job)] = inst_id

            if not in_flight:
                break

            done, _pending = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                inst_id = in_flight.pop(fut)
                inst = graph.instances[inst_id]
                try:
                    result = fut.result()
                except Exception as e:
                    console.print_exception(e)
                    result = InstanceResult(
                        id=inst.id, job=inst.name, matrix=inst.matrix,
                        status=JobStatus.FAILED, reason=f"{type(e).__name__}: {e}",
                    )
                finish(inst, result)

    return RunReport(run_id=run_id, results=tuple(results[i] for i in graph.order))


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def new_run_id() -> str:
    """Sortable run id: millisecond timestamp plus a random suffix."""
    return f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:6]}"


def concurrency_group(
    definition: PipelineDefinition,
    github: Mapping[str, str],
    *,
    root: str | Path = ".",
) -> Optional[str]:
    if definition.concurrency is None:
        return None
    group = render(definition.concurrency.group, {"github": dict(github), "env": definition.env}, root=root)
    return group or definition.name


def cancelled_report(graph: JobGraph, run_id: str, reason: str) -> RunReport:
    results = []
    for inst in graph:
        inst.transition(JobStatus.CANCELLED)
        results.append(InstanceResult(
            id=inst.id, job=inst.name, matrix=inst.matrix, status=JobStatus.CANCELLED, reason=reason,
        ))
    return RunReport(run_id=run_id, results=tuple(results))


def execute(
    definition: PipelineDefinition,
    *,
    event: str = "push",
    ref: str = "",
    base_ref: Optional[str] = None,
    sha: str = "",
    run_id: Optional[str] = None,
    governor: Optional[ConcurrencyGovernor] = None,
    cache: Optional[CacheStore] = None,
    root: str | Path = ".",
    workers: Optional[int] = None,
    executor: Optional[StepExecutor] = None,
    step_timeout: Optional[float] = settings.STEP_TIMEOUT,
    admission_timeout: Optional[float] = None,
    on_admitted: Optional[Callable[[str], None]] = None,
    console: Optional[Console] = None,
) -> Optional[RunReport]:
    """
    Run one pipeline invocation end to end:
    validate -> trigger filter -> expand -> build DAG -> admit -> schedule -> release.

    Returns None when the trigger filter rejects the event. Definition and
    graph errors (InvalidSpec, CyclicDependency) propagate before anything runs.
    """
    validate(definition)
    console = console or get_console()
    run_id = run_id or new_run_id()

    if not should_run(definition.triggers, event, ref, base_ref=base_ref):
        console.print_trigger_skipped(event, ref)
        return None

    graph = build_dag(expand_all(definition))
    github = {"ref": ref, "sha": sha, "event_name": event, "base_ref": base_ref or ""}
    group = concurrency_group(definition, github, root=root)

    governor = governor or ConcurrencyGovernor()
    token = governor.token(run_id)

    console.print_run_started(run_id=run_id, workflow=definition.name, job_count=len(graph), group=group)

    if group is not None:
        assert definition.concurrency is not None
        admission = governor.admit(
            group, run_id,
            cancel_in_progress=definition.concurrency.cancel_in_progress,
            timeout=admission_timeout,
        )
        console.print_admission(run_id, group, admission.value)
        if admission is Admission.SUPERSEDED:
            governor.release(group, run_id)
            return cancelled_report(graph, run_id, token.reason or "superseded")

    if on_admitted is not None:
        on_admitted(run_id)

    try:
        return run_pipeline(
            graph,
            run_id=run_id,
            workers=workers,
            cache=cache,
            token=token,
            executor=executor,
            root=root,
            env=definition.env,
            github=github,
            step_timeout=step_timeout,
            console=console,
        )
    finally:
        if group is not None:
            governor.release(group, run_id)
        else:
            governor.forget(run_id)
