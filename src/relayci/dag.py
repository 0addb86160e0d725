# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .errors import CyclicDependency, InvalidSpec
from .model import JobInstance, JobStatus


def find_cycle(needs: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a closed path (["a", "b", "a"]) or None.
    Nodes are visited in mapping order so the reported cycle is stable.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[str, int] = {n: WHITE for n in needs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in needs.get(node, ()):
            state = color.get(dep, BLACK)
            if state == GREY:
                return stack[stack.index(dep):] + [dep]
            if state == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in needs:
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


class JobGraph:
    """
    Executable DAG of job instances.

    Edges come from template-level `needs`: an instance depends on every
    instance of every template it needs, whatever their matrix assignment.
    """

    def __init__(
        self,
        instances: List[JobInstance],
        deps: Dict[str, Set[str]],
    ):
        self.instances: Dict[str, JobInstance] = {i.id: i for i in instances}
        self._order = [i.id for i in instances]
        self._deps = deps
        self._dependents: Dict[str, Set[str]] = {i: set() for i in self._order}
        for node, ds in deps.items():
            for d in ds:
                self._dependents[d].add(node)

    def __iter__(self):
        return (self.instances[i] for i in self._order)

    def __len__(self) -> int:
        return len(self._order)

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def dependencies(self, instance_id: str) -> Set[str]:
        return set(self._deps[instance_id])

    def dependents(self, instance_id: str) -> List[str]:
        return [i for i in self._order if i in self._dependents[instance_id]]

    def ready(self) -> List[str]:
        """Pending instances whose dependencies have all succeeded."""
        return [
            i for i in self._order
            if self.instances[i].status is JobStatus.PENDING
            and all(self.instances[d].status is JobStatus.SUCCEEDED for d in self._deps[i])
        ]

    def blocked(self) -> List[str]:
        """Pending instances with a failed or cancelled dependency."""
        bad = (JobStatus.FAILED, JobStatus.CANCELLED)
        return [
            i for i in self._order
            if self.instances[i].status is JobStatus.PENDING
            and any(self.instances[d].status in bad for d in self._deps[i])
        ]

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {i: len(self._deps[i]) for i in self._order}
        q = deque(i for i in self._order if indeg[i] == 0)

        levels: List[List[str]] = []
        while q:
            level = list(q)
            q.clear()
            for node in level:
                for child in self.dependents(node):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels


def build_dag(
    instances: Iterable[JobInstance],
    needs: Optional[Mapping[str, Sequence[str]]] = None,
) -> JobGraph:
    """
    Build a DAG from job instances.

    `needs` maps template name -> names of templates that must finish first.
    Defaults to each instance's `template.needs`.
    """
    instances = list(instances)

    ids = [i.id for i in instances]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise InvalidSpec(f"duplicate job instances: {dupes}")

    by_template: Dict[str, List[str]] = {}
    for inst in instances:
        by_template.setdefault(inst.name, []).append(inst.id)

    if needs is None:
        declared: Dict[str, Sequence[str]] = {}
        for inst in instances:
            declared.setdefault(inst.name, tuple(inst.template.needs))
        needs = declared

    for name, wanted in needs.items():
        for dep in wanted:
            if dep not in by_template:
                raise InvalidSpec(
                    f"job '{name}' needs missing job '{dep}'. Known jobs: {sorted(by_template)}"
                )

    cycle = find_cycle({name: tuple(needs.get(name, ())) for name in by_template})
    if cycle:
        raise CyclicDependency(cycle)

    deps: Dict[str, Set[str]] = {}
    for inst in instances:
        deps[inst.id] = {
            d for dep_name in needs.get(inst.name, ()) for d in by_template[dep_name]
        }
    return JobGraph(instances, deps)
