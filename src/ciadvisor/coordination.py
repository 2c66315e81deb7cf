# coordination.py
"""
Plan a set of pipelines together: who runs after whom, which files and
names collide, and which secrets and variables they share.
"""
from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .collaborators import FileStore
from .config import Policy
from .dag import build_edge_graph, schedule
from .errors import UnresolvedConflictError
from .findings import Finding, Kind, Severity
from .parser import parse, referenced_secrets, serialize
from .patches import StructuralPatch, apply_patches, merge_patches, set_field

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = ".github/workflows"

# total order; every inference edge points forward in it
ROLE_ORDER: Tuple[str, ...] = ("ci", "security", "performance", "cd", "release", "maintenance")

ROLE_NAMES: Dict[str, str] = {
    "ci": "Continuous Integration",
    "cd": "Continuous Deployment",
    "release": "Release",
    "security": "Security Scan",
    "performance": "Performance Test",
    "maintenance": "Maintenance",
}

# (upstream, downstream, only when this role is absent)
INFERENCE_RULES: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ("ci", "cd", None),
    ("ci", "security", None),
    ("ci", "performance", None),
    ("cd", "release", None),
    ("ci", "release", "cd"),
)

ECOSYSTEM_SECRETS: Dict[str, Tuple[str, ...]] = {
    "docker": ("DOCKER_USERNAME", "DOCKER_PASSWORD"),
    "aws": ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"),
    "npm": ("NPM_TOKEN",),
    "pypi": ("PYPI_API_TOKEN",),
}

# seconds saved per pipeline when caches are shared
SHARED_CACHE_SAVING = 45

_MAX_RESOLUTION_PASSES = 5


class ConflictType(str, Enum):
    NAMING = "naming"
    FILE = "file"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Resolution:
    action: str
    description: str
    automatic: bool


@dataclass(frozen=True)
class Conflict:
    type: ConflictType
    affected: Tuple[str, ...]
    description: str
    resolutions: Tuple[Resolution, ...]
    key: str = ""
    applied: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.type.value}:{self.key}"

    @property
    def automatic(self) -> Optional[Resolution]:
        for r in self.resolutions:
            if r.automatic:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "affected": list(self.affected),
            "description": self.description,
            "resolutions": [
                {"action": r.action, "description": r.description, "automatic": r.automatic}
                for r in self.resolutions
            ],
            "applied": self.applied,
        }


@dataclass(frozen=True)
class PipelineRequest:
    type: str
    text: Optional[str] = None
    name: Optional[str] = None
    output_path: Optional[str] = None
    ecosystems: Tuple[str, ...] = ()
    project_name: Optional[str] = None
    secrets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PlannedPipeline:
    id: str
    type: str
    display_name: str
    output_path: str
    secrets: Tuple[str, ...] = ()
    variables: Dict[str, str] = field(default_factory=dict)
    concurrency: Optional[str] = None
    concurrency_field: Optional[str] = None
    concurrency_changed: bool = False
    report: Any = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "display_name": self.display_name,
            "output_path": self.output_path,
            "secrets": list(self.secrets),
            "variables": dict(self.variables),
        }
        if self.concurrency is not None:
            out["concurrency"] = self.concurrency
        if self.report is not None:
            out["score"] = self.report.score
        return out


@dataclass(frozen=True)
class PipelineEdge:
    upstream: str
    downstream: str
    condition: str = "success"


@dataclass(frozen=True)
class CoordinationPlan:
    pipelines: Tuple[PlannedPipeline, ...]
    edges: Tuple[PipelineEdge, ...]
    conflicts: Tuple[Conflict, ...]
    resolved: bool
    execution_order: Tuple[str, ...]
    waves: Tuple[Tuple[str, ...], ...]
    shared_secrets: Tuple[str, ...] = ()
    shared_variables: Dict[str, str] = field(default_factory=dict)
    patches: Dict[str, Tuple[StructuralPatch, ...]] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()
    cross_pipeline: Tuple[Finding, ...] = ()
    overwrite: FrozenSet[str] = frozenset()

    @property
    def unresolved(self) -> Tuple[Conflict, ...]:
        return tuple(c for c in self.conflicts if c.applied is None)

    def pipeline(self, pipeline_id: str) -> PlannedPipeline:
        for p in self.pipelines:
            if p.id == pipeline_id:
                return p
        raise KeyError(pipeline_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved": self.resolved,
            "execution_order": list(self.execution_order),
            "waves": [list(w) for w in self.waves],
            "pipelines": [p.to_dict() for p in self.pipelines],
            "edges": [
                {"upstream": e.upstream, "downstream": e.downstream, "condition": e.condition}
                for e in self.edges
            ],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "shared_secrets": list(self.shared_secrets),
            "shared_variables": dict(self.shared_variables),
            "patches": {k: [p.to_dict() for p in v] for k, v in self.patches.items()},
            "warnings": list(self.warnings),
            "cross_pipeline": [f.to_dict() for f in self.cross_pipeline],
        }


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def role_rank(pipeline_type: str) -> int:
    try:
        return ROLE_ORDER.index(pipeline_type)
    except ValueError:
        return len(ROLE_ORDER)


def normalize_path(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


def _renamed_path(path: str, pipeline_id: str) -> str:
    directory, filename = posixpath.split(path)
    stem, ext = posixpath.splitext(filename)
    if pipeline_id.startswith(stem + "-"):
        new = f"{pipeline_id}{ext}"
    else:
        new = f"{stem}-{pipeline_id}{ext}"
    return posixpath.join(directory, new) if directory else new


def _request_key(r: PipelineRequest) -> Tuple[Any, ...]:
    return (role_rank(r.type), r.type, r.name or "", r.output_path or "", r.text or "")


def _concurrency(extras: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    value = extras.get("concurrency")
    if isinstance(value, str):
        return value, "concurrency"
    if isinstance(value, dict) and isinstance(value.get("group"), str):
        return value["group"], "concurrency.group"
    return None, None


def _build_pipelines(
    requests: Sequence[PipelineRequest],
    output_dir: str,
    analyze: Optional[Callable[[str], Any]],
) -> List[PlannedPipeline]:
    counts: Dict[str, int] = {}
    pipelines: List[PlannedPipeline] = []
    for req in sorted(requests, key=_request_key):
        if not req.type or not req.type.strip():
            raise ValueError("pipeline type must be a non-empty string")
        counts[req.type] = counts.get(req.type, 0) + 1
        pid = req.type if counts[req.type] == 1 else f"{req.type}-{counts[req.type]}"

        variables: Dict[str, str] = {}
        if req.project_name:
            variables["PROJECT_NAME"] = req.project_name
        if req.ecosystems:
            variables["ECOSYSTEMS"] = ",".join(sorted(set(req.ecosystems)))

        secrets = set(req.secrets)
        display = req.name
        concurrency = concurrency_field = None
        report = None
        if req.text is not None:
            definition = parse(req.text, strict=False)
            display = display or definition.name
            secrets.update(referenced_secrets(definition))
            concurrency, concurrency_field = _concurrency(definition.extras)
            if analyze is not None:
                report = analyze(req.text)
        for eco in req.ecosystems:
            secrets.update(ECOSYSTEM_SECRETS.get(eco, ()))

        pipelines.append(
            PlannedPipeline(
                id=pid,
                type=req.type,
                display_name=display or ROLE_NAMES.get(req.type, req.type.replace("-", " ").title()),
                output_path=normalize_path(req.output_path or f"{output_dir}/{req.type}.yml"),
                secrets=tuple(sorted(secrets)),
                variables=variables,
                concurrency=concurrency,
                concurrency_field=concurrency_field,
                report=report,
            )
        )
    return pipelines


# ---------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------

def detect_conflicts(
    pipelines: Sequence[PlannedPipeline],
    file_store: Optional[FileStore] = None,
    overwrite: Iterable[str] = (),
) -> List[Conflict]:
    """Every naming, file and resource conflict among `pipelines`, in a stable order."""
    conflicts: List[Conflict] = []

    by_name: Dict[str, List[PlannedPipeline]] = {}
    for p in pipelines:
        by_name.setdefault(p.display_name.casefold(), []).append(p)
    for key in sorted(by_name):
        group = by_name[key]
        if len(group) > 1:
            ids = tuple(sorted(p.id for p in group))
            conflicts.append(
                Conflict(
                    type=ConflictType.NAMING,
                    affected=ids,
                    description=f"{len(ids)} pipelines are named '{group[0].display_name}'",
                    resolutions=(
                        Resolution("rename", "suffix the display name with the pipeline id", True),
                    ),
                    key=key,
                )
            )

    by_path: Dict[str, List[PlannedPipeline]] = {}
    for p in pipelines:
        by_path.setdefault(normalize_path(p.output_path), []).append(p)
    for path in sorted(by_path):
        group = by_path[path]
        if len(group) > 1:
            ids = tuple(sorted(p.id for p in group))
            conflicts.append(
                Conflict(
                    type=ConflictType.FILE,
                    affected=ids,
                    description=f"{', '.join(ids)} would all write {path}",
                    resolutions=(
                        Resolution("rename", "suffix the file name with the pipeline id", True),
                    ),
                    key=path,
                )
            )

    if file_store is not None:
        accepted = {normalize_path(p) for p in overwrite}
        for path in sorted(by_path):
            if path in accepted or len(by_path[path]) > 1 or not file_store.exists(path):
                continue
            ids = (by_path[path][0].id,)
            conflicts.append(
                Conflict(
                    type=ConflictType.FILE,
                    affected=ids,
                    description=f"{path} already exists",
                    resolutions=(
                        Resolution("overwrite", f"replace the existing {path}", False),
                        Resolution("keep", f"keep the existing {path} and skip '{ids[0]}'", False),
                    ),
                    key=f"existing:{path}",
                )
            )

    by_group: Dict[str, List[PlannedPipeline]] = {}
    for p in pipelines:
        # `github.workflow` makes otherwise equal groups differ per pipeline
        if p.concurrency and "github.workflow" not in p.concurrency:
            by_group.setdefault(p.concurrency, []).append(p)
    for group_name in sorted(by_group):
        group = by_group[group_name]
        if len(group) > 1:
            ids = tuple(sorted(p.id for p in group))
            conflicts.append(
                Conflict(
                    type=ConflictType.RESOURCE,
                    affected=ids,
                    description=f"{', '.join(ids)} share the concurrency group '{group_name}' and cancel each other",
                    resolutions=(
                        Resolution("rename", "suffix the concurrency group with the pipeline id", True),
                    ),
                    key=group_name,
                )
            )
    return conflicts


def _apply_resolution(
    conflict: Conflict,
    action: str,
    pipelines: List[PlannedPipeline],
    overwrite: set,
) -> List[PlannedPipeline]:
    if action not in {r.action for r in conflict.resolutions}:
        raise ValueError(f"'{action}' is not a resolution of conflict {conflict.id}")

    renamed = set(conflict.affected[1:])
    out: List[PlannedPipeline] = []
    for p in pipelines:
        if action == "keep" and p.id in conflict.affected:
            logger.info("keeping existing %s; '%s' will not be generated", p.output_path, p.id)
            continue
        if action == "overwrite" and p.id in conflict.affected:
            overwrite.add(normalize_path(p.output_path))
        elif action == "rename" and p.id in renamed:
            if conflict.type is ConflictType.NAMING:
                p = replace(p, display_name=f"{p.display_name} ({p.id})")
            elif conflict.type is ConflictType.FILE:
                p = replace(p, output_path=_renamed_path(p.output_path, p.id))
            elif conflict.type is ConflictType.RESOURCE:
                p = replace(p, concurrency=f"{p.concurrency}-{p.id}", concurrency_changed=True)
        out.append(p)
    return out


def _auto_resolve(
    pipelines: List[PlannedPipeline],
    file_store: Optional[FileStore],
    overwrite: set,
) -> Tuple[List[PlannedPipeline], List[Conflict], List[Conflict]]:
    """Returns (pipelines, applied, pending); nothing is applied if any conflict needs a choice."""
    applied: List[Conflict] = []
    for _ in range(_MAX_RESOLUTION_PASSES):
        conflicts = detect_conflicts(pipelines, file_store, overwrite)
        if not conflicts:
            return pipelines, applied, []
        if any(c.automatic is None for c in conflicts):
            return pipelines, applied, conflicts
        for c in conflicts:
            pipelines = _apply_resolution(c, c.automatic.action, pipelines, overwrite)
            applied.append(replace(c, applied=c.automatic.action))
    return pipelines, applied, detect_conflicts(pipelines, file_store, overwrite)


# ---------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------

def infer_edges(pipelines: Sequence[PlannedPipeline]) -> Tuple[PipelineEdge, ...]:
    by_type: Dict[str, List[str]] = {}
    for p in pipelines:
        by_type.setdefault(p.type, []).append(p.id)
    edges: List[PipelineEdge] = []
    for upstream, downstream, unless in INFERENCE_RULES:
        if unless is not None and unless in by_type:
            continue
        for u in by_type.get(upstream, ()):
            for d in by_type.get(downstream, ()):
                edges.append(PipelineEdge(upstream=u, downstream=d))
    return tuple(sorted(edges, key=lambda e: (e.upstream, e.downstream)))


def _shared_variables(pipelines: Sequence[PlannedPipeline]) -> Dict[str, str]:
    if len(pipelines) < 2:
        return {}
    first, rest = pipelines[0], pipelines[1:]
    return {
        k: v for k, v in sorted(first.variables.items())
        if all(p.variables.get(k) == v for p in rest)
    }


def _cross_pipeline(pipelines: Sequence[PlannedPipeline]) -> Tuple[Finding, ...]:
    missing: Dict[str, List[str]] = {}
    for p in pipelines:
        if p.report is None:
            continue
        ecosystems = {
            f.details.get("ecosystem")
            for f in p.report.findings
            if f.kind is Kind.CACHING and not f.degraded and f.details.get("ecosystem")
        }
        for eco in ecosystems:
            missing.setdefault(eco, []).append(p.id)

    findings = []
    for eco, ids in sorted(missing.items()):
        if len(ids) < 2:
            continue
        findings.append(
            Finding(
                rule="shared-cache",
                kind=Kind.CACHING,
                severity=Severity.LOW,
                title=f"Share the {eco} cache across pipelines",
                description=f"{', '.join(ids)} all install {eco} dependencies without a cache; use one cache key for all of them.",
                estimated_time_saving=SHARED_CACHE_SAVING * len(ids),
                subject=eco,
                details={"pipelines": ids, "ecosystem": eco},
            )
        )
    return tuple(findings)


def _assemble(
    pipelines: List[PlannedPipeline],
    conflicts: List[Conflict],
    resolved: bool,
    overwrite: set,
    policy: Optional[Policy],
) -> CoordinationPlan:
    ids = [p.id for p in pipelines]
    edges = infer_edges(pipelines)
    upstreams: Dict[str, List[str]] = {pid: [] for pid in ids}
    for e in edges:
        upstreams[e.downstream].append(e.upstream)
    exec_plan = schedule(build_edge_graph(ids, upstreams))
    order = exec_plan.order
    by_id = {p.id: p for p in pipelines}

    counts: Dict[str, int] = {}
    for p in pipelines:
        for s in p.secrets:
            counts[s] = counts.get(s, 0) + 1
    shared_secrets = tuple(sorted(s for s, n in counts.items() if n > 1))
    shared_variables = _shared_variables(pipelines)

    patches: Dict[str, Tuple[StructuralPatch, ...]] = {}
    for p in pipelines:
        ps: List[StructuralPatch] = []
        for s in shared_secrets:
            if s in p.secrets:
                ps.append(set_field("${{ secrets.%s }}" % s, field=f"env.{s}"))
        for k, v in shared_variables.items():
            ps.append(set_field(v, field=f"env.{k}"))
        ups = sorted(upstreams[p.id], key=order.index)
        if ups:
            ps.append(
                set_field(
                    {"workflows": [by_id[u].display_name for u in ups], "types": ["completed"]},
                    field="on.workflow_run",
                )
            )
        if p.concurrency_changed and p.concurrency_field:
            ps.append(set_field(p.concurrency, field=p.concurrency_field))
        patches[p.id] = merge_patches(ps)

    warnings: List[str] = []
    if policy is not None:
        present = {p.type for p in pipelines}
        for t in policy.required_pipeline_types:
            if t not in present:
                warnings.append(f"required pipeline type '{t}' is not part of the plan")

    return CoordinationPlan(
        pipelines=tuple(sorted(pipelines, key=lambda p: order.index(p.id))),
        edges=edges,
        conflicts=tuple(conflicts),
        resolved=resolved,
        execution_order=order,
        waves=exec_plan.waves,
        shared_secrets=shared_secrets,
        shared_variables=shared_variables,
        patches=patches,
        warnings=tuple(warnings),
        cross_pipeline=_cross_pipeline(pipelines),
        overwrite=frozenset(overwrite),
    )


def plan_pipelines(
    requests: Iterable[PipelineRequest | str],
    *,
    policy: Optional[Policy] = None,
    file_store: Optional[FileStore] = None,
    analyze: Optional[Callable[[str], Any]] = None,
    output_dir: str = DEFAULT_OUTPUT_DIR,
) -> CoordinationPlan:
    """
    Build a CoordinationPlan for the requested pipelines.

    Plain strings are shorthand for `PipelineRequest(type=...)`. When every
    conflict has an automatic resolution it is applied and the plan is
    `resolved`; otherwise the conflicts are returned untouched for `resolve`.
    """
    reqs = [PipelineRequest(type=r) if isinstance(r, str) else r for r in requests]
    pipelines = _build_pipelines(reqs, output_dir, analyze)
    overwrite: set = set()
    pipelines, applied, pending = _auto_resolve(pipelines, file_store, overwrite)
    logger.debug("planned %d pipeline(s), %d conflict(s) auto-resolved, %d pending",
                 len(pipelines), len(applied), len(pending))
    return _assemble(pipelines, applied + pending, not pending, overwrite, policy)


def resolve(
    plan: CoordinationPlan,
    choices: Mapping[str, str],
    *,
    file_store: Optional[FileStore] = None,
    policy: Optional[Policy] = None,
) -> CoordinationPlan:
    """
    Apply caller-chosen resolutions (conflict id -> action) and re-check.

    Unresolved conflicts without a choice fall back to their automatic
    resolution if they have one.
    """
    pipelines = list(plan.pipelines)
    overwrite = set(plan.overwrite)
    applied = [c for c in plan.conflicts if c.applied is not None]
    for c in plan.unresolved:
        action = choices.get(c.id)
        if action is None and c.automatic is not None:
            action = c.automatic.action
        if action is None:
            continue
        pipelines = _apply_resolution(c, action, pipelines, overwrite)
        applied.append(replace(c, applied=action))

    pipelines, auto, pending = _auto_resolve(pipelines, file_store, overwrite)
    return _assemble(pipelines, applied + auto + pending, not pending, overwrite, policy)


def apply_plan(plan: CoordinationPlan, texts: Mapping[str, str]) -> Dict[str, str]:
    """Apply each pipeline's coordination patches to its text (pipeline id -> text)."""
    if not plan.resolved:
        raise UnresolvedConflictError(conflicts=plan.unresolved)
    out: Dict[str, str] = {}
    for pid, text in texts.items():
        plan.pipeline(pid)
        definition = parse(text)
        out[pid] = serialize(apply_patches(definition, plan.patches.get(pid, ())))
    return out
