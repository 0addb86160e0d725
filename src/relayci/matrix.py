# matrix.py
from __future__ import annotations

import itertools
from typing import List

from .errors import InvalidSpec
from .model import JobInstance, JobTemplate, PipelineDefinition


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Expand a job template into one instance per matrix combination.

    Order is the Cartesian product over axes in declaration order, then value
    order, so repeated calls on the same template enumerate identically:

        {"os": ["linux", "mac"], "py": ["3.11", "3.12"]}
        -> (linux, 3.11), (linux, 3.12), (mac, 3.11), (mac, 3.12)
    """
    if not template.matrix:
        return [JobInstance(template=template)]

    axes = list(template.matrix.keys())
    values = []
    for axis in axes:
        vals = tuple(template.matrix[axis])
        if not vals:
            raise InvalidSpec(f"matrix axis '{axis}' has no values", where=f"job {template.name}")
        if len(set(map(repr, vals))) != len(vals):
            raise InvalidSpec(f"matrix axis '{axis}' has duplicate values", where=f"job {template.name}")
        values.append(vals)

    return [
        JobInstance(template=template, assignment=tuple(zip(axes, combo)))
        for combo in itertools.product(*values)
    ]


def expand_all(definition: PipelineDefinition) -> List[JobInstance]:
    out: List[JobInstance] = []
    for template in definition.jobs:
        out.extend(expand(template))
    return out
