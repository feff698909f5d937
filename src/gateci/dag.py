# dag.py
from __future__ import annotations

import heapq
import math
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import DefinitionError
from .model import ArtifactRef, Pipeline, Stage

# Names the executor publishes on behalf of every job.
REPORT_ARTIFACT = "report"
LOG_ARTIFACT = "log"
RESERVED_ARTIFACT_NAMES = frozenset({REPORT_ARTIFACT, LOG_ARTIFACT})

PROBE_KINDS = ("command", "tcp", "http")


def build_dag(stages: List[Stage]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Stage objects.

    Requires:
      - stage.id: str (unique)
      - stage.needs: iterable[str] (ids of stages that must finish BEFORE this stage)
    """
    ids = [s.id for s in stages]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DefinitionError(f"Duplicate stage ids found: {dupes}", problems=[f"duplicate stage id '{d}'" for d in dupes])

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {i: set() for i in ids}
    indeg: Dict[str, int] = {i: 0 for i in ids}

    for stage in stages:
        for need in stage.needs:
            if need == stage.id:
                raise DefinitionError(f"Stage '{stage.id}' depends on itself")
            if need not in id_set:
                raise DefinitionError(
                    f"Stage '{stage.id}' needs missing stage '{need}'. Known stages: {sorted(id_set)}"
                )
            # Edge need -> stage.id (need must finish before stage)
            if stage.id not in adj[need]:
                adj[need].add(stage.id)
                indeg[stage.id] += 1

    return adj, indeg


def topo_order(stages: List[Stage]) -> List[str]:
    """
    Topological order with declaration order as the tie-break, so the same
    pipeline always produces the same order.
    """
    adj, indeg = build_dag(stages)
    position = {s.id: i for i, s in enumerate(stages)}
    indeg = dict(indeg)

    heap = [(position[i], i) for i, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[str] = []

    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (position[child], child))

    if len(order) != len(indeg):
        stuck = [s.id for s in stages if indeg[s.id] > 0]
        raise DefinitionError(f"Stage graph has a cycle. Stuck stages: {stuck}", problems=[f"cycle through '{s}'" for s in stuck])

    return order


def topo_levels(stages: List[Stage]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Each level can run in parallel. Used for plan printing only.
    """
    adj, indeg = build_dag(stages)
    position = {s.id: i for i, s in enumerate(stages)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=position.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        nxt: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)

        q.extend(sorted(nxt, key=position.__getitem__))
        levels.append(level)

    if processed != len(indeg):
        remaining = [s.id for s in stages if indeg[s.id] > 0]
        raise DefinitionError(f"Stage graph has a cycle. Stuck stages: {remaining}")

    return levels


def upstream_of(stages: List[Stage], stage_id: str) -> Set[str]:
    """All stages `stage_id` transitively depends on."""
    by_id = {s.id: s for s in stages}
    seen: Set[str] = set()
    stack = list(by_id[stage_id].needs)
    while stack:
        cur = stack.pop()
        if cur in seen or cur not in by_id:
            continue
        seen.add(cur)
        stack.extend(by_id[cur].needs)
    return seen


def downstream_of(adj: Dict[str, Set[str]], stage_id: str) -> Set[str]:
    """All stages that transitively depend on `stage_id`."""
    seen: Set[str] = set()
    stack = list(adj.get(stage_id, ()))
    while stack:
        cur = stack.pop()
        if cur in seen:
            continue
        seen.add(cur)
        stack.extend(adj.get(cur, ()))
    return seen


# ----------------------------------------------------------------------
# Whole-pipeline validation
# ----------------------------------------------------------------------

def validate_pipeline(pipeline: Pipeline, secret_names: Optional[Iterable[str]] = None) -> List[str]:
    """
    Check everything that must hold before any job runs.

    secret_names: names bound for this run. None skips the binding check
    (useful for `gateci validate`, which has no bindings).

    Returns the topological order on success, raises DefinitionError listing
    every problem otherwise.
    """
    stages = list(pipeline.stages)
    problems: List[str] = []

    if not stages:
        problems.append("pipeline has no stages")

    order: List[str] = []
    try:
        order = topo_order(stages)
    except DefinitionError as e:
        problems.extend(e.problems or [e.message])

    if not pipeline.default_timeout > 0 or not math.isfinite(pipeline.default_timeout):
        problems.append(f"default_timeout must be a positive number, got {pipeline.default_timeout!r}")

    declared = set(pipeline.secrets)
    bound = set(secret_names) if secret_names is not None else None
    for name in sorted(declared):
        if bound is not None and name not in bound:
            problems.append(f"secret '{name}' is declared but has no binding")

    ids = {s.id for s in stages}
    outputs = {s.id: set(s.job.outputs) for s in stages}

    for stage in stages:
        job = stage.job
        where = f"stage '{stage.id}'"

        if not stage.id or "/" in stage.id or stage.id.startswith("."):
            problems.append(f"{where}: invalid stage id")
        if not job.command or not job.command.strip():
            problems.append(f"{where}: job has no command")
        if job.timeout is not None and not job.timeout > 0:
            problems.append(f"{where}: timeout must be positive, got {job.timeout!r}")

        for name in job.secrets:
            if name not in declared:
                problems.append(f"{where}: secret '{name}' is not declared by the pipeline")

        seen_outputs: Set[str] = set()
        for name in job.outputs:
            if name in seen_outputs:
                problems.append(f"{where}: output '{name}' declared twice")
            seen_outputs.add(name)
            if name in RESERVED_ARTIFACT_NAMES:
                problems.append(f"{where}: output name '{name}' is reserved")
            if not name or name.startswith("/") or ".." in name.split("/"):
                problems.append(f"{where}: output name '{name}' must be a relative path inside the output dir")

        upstream = upstream_of(stages, stage.id)
        for ref in job.inputs:
            ref = ArtifactRef.parse(ref)
            if ref.stage not in ids:
                problems.append(f"{where}: input '{ref}' refers to unknown stage '{ref.stage}'")
            elif ref.stage not in upstream:
                problems.append(f"{where}: input '{ref}' is not produced by a stage it depends on")
            elif ref.name not in outputs[ref.stage] and ref.name not in RESERVED_ARTIFACT_NAMES:
                problems.append(f"{where}: input '{ref}' is not a declared output of '{ref.stage}'")
            elif ref.name == REPORT_ARTIFACT and not pipeline.stage(ref.stage).job.report:
                problems.append(f"{where}: input '{ref}' but '{ref.stage}' does not produce a report")

        service_names: Set[str] = set()
        for svc in stage.services:
            if svc.name in service_names:
                problems.append(f"{where}: service '{svc.name}' declared twice")
            service_names.add(svc.name)
            if not svc.image and not svc.command:
                problems.append(f"{where}: service '{svc.name}' needs an image or a command")
            probe = svc.probe
            if probe is None:
                continue
            if probe.kind not in PROBE_KINDS:
                problems.append(f"{where}: service '{svc.name}' has unknown probe kind '{probe.kind}'")
            elif probe.kind == "command" and not probe.command:
                problems.append(f"{where}: service '{svc.name}' command probe has no command")
            elif probe.kind == "tcp" and probe.port is None:
                problems.append(f"{where}: service '{svc.name}' tcp probe has no port")
            elif probe.kind == "http" and not probe.url:
                problems.append(f"{where}: service '{svc.name}' http probe has no url")
            if probe.retries < 1 or probe.interval < 0 or not probe.timeout > 0:
                problems.append(f"{where}: service '{svc.name}' probe needs retries >= 1, interval >= 0, timeout > 0")

    if problems:
        raise DefinitionError(f"Pipeline '{pipeline.name}' is invalid", problems=problems)
    return order
