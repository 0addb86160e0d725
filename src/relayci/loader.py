# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from .errors import InvalidSpec
from .expressions import check as check_expressions
from .model import (
    CachePolicy,
    ConcurrencyPolicy,
    JobTemplate,
    PipelineDefinition,
    Step,
    TriggerFilter,
)

YAML_SUFFIXES = (".yml", ".yaml")
JOB_KEYS = {"steps", "needs", "strategy", "matrix", "cache", "env", "runs-on"}
STEP_KEYS = {"name", "run", "cwd", "working-directory", "cached", "timeout", "uses", "with"}


# ----------------------------------------------------------------------
# Validation shared by every loader
# ----------------------------------------------------------------------

def validate(definition: PipelineDefinition) -> PipelineDefinition:
    """
    Load-time checks. Cycles are reported later by the graph builder
    (CyclicDependency); everything else malformed is InvalidSpec.
    """
    if not definition.jobs:
        raise InvalidSpec("pipeline defines no jobs", where=definition.name)

    names = [j.name for j in definition.jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise InvalidSpec(f"duplicate job names: {dupes}", where=definition.name)

    known = set(names)
    for j in definition.jobs:
        where = f"job {j.name}"
        if not j.steps:
            raise InvalidSpec("job has no steps", where=where)
        for dep in j.needs:
            if dep not in known:
                raise InvalidSpec(f"needs missing job '{dep}'. Known jobs: {sorted(known)}", where=where)
        if j.matrix is not None:
            if not j.matrix:
                raise InvalidSpec("matrix declares no axes", where=where)
            for axis, values in j.matrix.items():
                if not values:
                    raise InvalidSpec(f"matrix axis '{axis}' has no values", where=where)
        if j.cache is not None and not j.cache.key.strip():
            raise InvalidSpec("cache key is empty", where=where)
        for label, template in _job_templates(j):
            _check_template(template, f"{where} {label}")

    if definition.concurrency is not None:
        _check_template(definition.concurrency.group, "concurrency group")
    for name, value in definition.env.items():
        _check_template(value, f"env {name}")
    return definition


def _job_templates(j: JobTemplate) -> Iterator[Tuple[str, str]]:
    if j.cache is not None:
        yield "cache key", j.cache.key
        for k in j.cache.restore_keys:
            yield "cache restore-keys", k
    if j.runs_on:
        yield "runs-on", j.runs_on
    for name, value in j.env.items():
        yield f"env {name}", value
    for step in j.steps:
        yield f"step '{step.name}'", step.run


def _check_template(template: str, where: str) -> None:
    try:
        check_expressions(template)
    except InvalidSpec as e:
        raise InvalidSpec(e.message, where=where) from e


# ----------------------------------------------------------------------
# YAML documents
# ----------------------------------------------------------------------

def _str_list(value: Any, what: str, where: str) -> Tuple[str, ...]:
    """Accept a list, a single string, or a multi-line string ("path: |")."""
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(line.strip() for line in value.splitlines() if line.strip())
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return tuple(str(v) for v in value)
    raise InvalidSpec(f"{what} must be a string or a list of strings", where=where)


def _env(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidSpec("env must be a mapping", where=where)
    return {str(k): "true" if v is True else "false" if v is False else str(v) for k, v in value.items()}


def _triggers(value: Any) -> TriggerFilter:
    if value is None:
        return TriggerFilter()
    if isinstance(value, str):
        return TriggerFilter(events={value: ()})
    if isinstance(value, list):
        return TriggerFilter(events={str(e): () for e in value})
    if isinstance(value, Mapping):
        events: Dict[str, Tuple[str, ...]] = {}
        for event, cfg in value.items():
            branches: Tuple[str, ...] = ()
            if isinstance(cfg, Mapping):
                branches = _str_list(cfg.get("branches"), "branches", f"on.{event}")
            events[str(event)] = branches
        return TriggerFilter(events=events)
    raise InvalidSpec("'on' must be a string, a list or a mapping", where="on")


def _concurrency(value: Any) -> Optional[ConcurrencyPolicy]:
    if value is None:
        return None
    if isinstance(value, str):
        return ConcurrencyPolicy(group=value)
    if isinstance(value, Mapping) and isinstance(value.get("group"), str):
        cancel = value.get("cancel-in-progress", value.get("cancel_in_progress", False))
        if not isinstance(cancel, bool):
            raise InvalidSpec("cancel-in-progress must be true or false", where="concurrency")
        return ConcurrencyPolicy(group=value["group"], cancel_in_progress=cancel)
    raise InvalidSpec("concurrency needs a 'group' string", where="concurrency")


def _matrix(value: Any, where: str) -> Optional[Dict[str, Tuple[Any, ...]]]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidSpec("matrix must map axis names to lists of values", where=where)
    axes: Dict[str, Tuple[Any, ...]] = {}
    for axis, values in value.items():
        if axis in ("include", "exclude"):
            raise InvalidSpec(f"matrix '{axis}' is not supported", where=where)
        if not isinstance(values, list):
            raise InvalidSpec(f"matrix axis '{axis}' must be a list", where=where)
        if not values:
            raise InvalidSpec(f"matrix axis '{axis}' has no values", where=where)
        axes[str(axis)] = tuple(values)
    return axes


def _cache(value: Any, where: str) -> Optional[CachePolicy]:
    if value is None:
        return None
    if not isinstance(value, Mapping) or not isinstance(value.get("key"), str):
        raise InvalidSpec("cache needs a 'key' string", where=where)
    paths = value.get("path", value.get("paths"))
    restore = value.get("restore-keys", value.get("restore_keys"))
    return CachePolicy(
        key=value["key"],
        restore_keys=_str_list(restore, "restore-keys", where),
        paths=_str_list(paths, "cache path", where),
    )


def _step(raw: Any, index: int, where: str) -> Step:
    where = f"{where} step {index + 1}"
    if not isinstance(raw, Mapping):
        raise InvalidSpec("step must be a mapping", where=where)
    unknown = set(raw) - STEP_KEYS
    if unknown:
        raise InvalidSpec(f"unknown step keys {sorted(unknown)}", where=where)
    if "uses" in raw:
        raise InvalidSpec(
            f"'uses: {raw['uses']}' steps are not supported; relayci runs shell commands only "
            "and expects the working tree and tools to be provided by the host",
            where=where,
        )
    run = raw.get("run")
    if not isinstance(run, str) or not run.strip():
        raise InvalidSpec("step needs a 'run' command", where=where)

    timeout = raw.get("timeout")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise InvalidSpec("timeout must be a positive number of seconds", where=where)

    name = raw.get("name") or run.strip().splitlines()[0]
    return Step(
        name=str(name),
        run=run,
        cwd=raw.get("cwd", raw.get("working-directory")),
        cached=bool(raw.get("cached", False)),
        timeout=float(timeout) if timeout is not None else None,
    )


def _job(name: str, raw: Any) -> JobTemplate:
    where = f"job {name}"
    if not isinstance(raw, Mapping):
        raise InvalidSpec("job must be a mapping", where=where)
    unknown = set(raw) - JOB_KEYS
    if unknown:
        raise InvalidSpec(f"unknown job keys {sorted(unknown)}", where=where)

    steps = raw.get("steps")
    if not isinstance(steps, list) or not steps:
        raise InvalidSpec("job needs a non-empty 'steps' list", where=where)

    strategy = raw.get("strategy") or {}
    if not isinstance(strategy, Mapping):
        raise InvalidSpec("strategy must be a mapping", where=where)
    matrix_raw = raw.get("matrix", strategy.get("matrix"))

    runs_on = raw.get("runs-on")
    return JobTemplate(
        name=name,
        steps=tuple(_step(s, i, where) for i, s in enumerate(steps)),
        needs=_str_list(raw.get("needs"), "needs", where),
        matrix=_matrix(matrix_raw, where),
        cache=_cache(raw.get("cache"), where),
        env=_env(raw.get("env"), where),
        runs_on=str(runs_on) if runs_on is not None else None,
    )


def parse_document(doc: Any, *, default_name: str = "pipeline") -> PipelineDefinition:
    """Build a PipelineDefinition from an already-parsed YAML/JSON document."""
    if not isinstance(doc, Mapping):
        raise InvalidSpec("pipeline document must be a mapping")
    jobs = doc.get("jobs")
    if not isinstance(jobs, Mapping) or not jobs:
        raise InvalidSpec("pipeline needs a non-empty 'jobs' mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = doc.get("on", doc.get(True))

    definition = PipelineDefinition(
        name=str(doc.get("name") or default_name),
        jobs=tuple(_job(str(name), raw) for name, raw in jobs.items()),
        concurrency=_concurrency(doc.get("concurrency")),
        triggers=_triggers(on),
        env=_env(doc.get("env"), "env"),
    )
    return validate(definition)


def load_yaml(path: str | Path) -> PipelineDefinition:
    p = Path(path)
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise InvalidSpec(f"cannot parse YAML: {e}", where=p.name) from e
    return parse_document(doc, default_name=p.stem)


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def _from_python_value(value: Any, default_name: str) -> PipelineDefinition:
    if isinstance(value, PipelineDefinition):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(j, JobTemplate) for j in value):
        return PipelineDefinition(name=default_name, jobs=tuple(value))
    raise TypeError(
        "Workflow must return/define a PipelineDefinition or a list of JobTemplate. "
        "Define workflow() -> pipeline(...) or PIPELINE = pipeline(...) / JOBS = [job(...), ...]."
    )


def load_python(path: str | Path) -> PipelineDefinition:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> PipelineDefinition | List[JobTemplate]
      - PIPELINE = PipelineDefinition
      - JOBS = [JobTemplate, ...]
    """
    wf_path = Path(path)
    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        value = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        value = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]
    else:
        raise TypeError(f"{wf_path.name} defines neither workflow(), PIPELINE nor JOBS")

    return validate(_from_python_value(value, wf_path.stem))


def load_workflow(path: str | Path) -> PipelineDefinition:
    """Load a pipeline definition from a .yml/.yaml document or a .py workflow file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return load_python(wf_path)
    raise ValueError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")
