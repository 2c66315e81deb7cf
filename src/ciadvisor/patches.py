# patches.py
"""
Structural patches: the machine-applicable half of a recommendation.

Patches address the definition tree, never text offsets, so applying them
does not depend on the original formatting of the file.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .dag import build_graph
from .errors import CycleError, InvalidPatchError, ParseError, PatchConflictError
from .model import PipelineDefinition
from .parser import definition_from_dict, definition_to_dict, parse, serialize, step_to_dict, to_plain


class PatchOp(str, Enum):
    INSERT_STEP = "insert-step"
    SET_FIELD = "set-field"
    REMOVE_FIELD = "remove-field"


@dataclass(frozen=True)
class PatchPath:
    """
    Where a patch applies.

    job=None addresses the pipeline itself; `step` is an index into the
    job's steps as they are in the analysed definition; `field` is a dotted
    key path below that node (e.g. `strategy.matrix.node`).
    """
    job: Optional[str] = None
    step: Optional[int] = None
    field: Optional[str] = None

    @property
    def target(self) -> str:
        parts: List[str] = []
        if self.job is not None:
            parts.append(f"jobs.{self.job}")
        if self.step is not None:
            parts[-1] += f".steps[{self.step}]" if parts else f"steps[{self.step}]"
        if self.field:
            parts.append(self.field)
        return ".".join(parts)

    def segments(self) -> Tuple[Any, ...]:
        parts: List[Any] = []
        if self.job is not None:
            parts.extend(["jobs", self.job])
        if self.step is not None:
            parts.extend(["steps", self.step])
        if self.field:
            parts.extend(self.field.split("."))
        return tuple(parts)

    def overlaps(self, other: "PatchPath") -> bool:
        """Equal paths, or one nested below the other."""
        a, b = self.segments(), other.segments()
        n = min(len(a), len(b))
        return a[:n] == b[:n]


@dataclass(frozen=True)
class StructuralPatch:
    op: PatchOp
    path: PatchPath
    value: Any = None

    @property
    def target(self) -> str:
        return self.path.target

    def plain_value(self) -> Any:
        if self.op is PatchOp.INSERT_STEP:
            return [step_to_dict(s) for s in self.value]
        return to_plain(self.value)

    def sort_key(self) -> Tuple[str, str, str]:
        return (self.target, self.op.value, _canonical(self.plain_value()))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"op": self.op.value, "target": self.target}
        if self.op is not PatchOp.REMOVE_FIELD:
            out["value"] = self.plain_value()
        return out


def insert_steps(job: str, index: int, *steps) -> StructuralPatch:
    return StructuralPatch(PatchOp.INSERT_STEP, PatchPath(job=job, step=index), tuple(steps))


def set_field(value: Any, *, job: Optional[str] = None, step: Optional[int] = None, field: str) -> StructuralPatch:
    return StructuralPatch(PatchOp.SET_FIELD, PatchPath(job=job, step=step, field=field), value)


def remove_field(*, job: Optional[str] = None, step: Optional[int] = None, field: str) -> StructuralPatch:
    return StructuralPatch(PatchOp.REMOVE_FIELD, PatchPath(job=job, step=step, field=field))


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _unique(patches: Iterable[StructuralPatch]) -> List[StructuralPatch]:
    out: List[StructuralPatch] = []
    for p in patches:
        if p not in out:
            out.append(p)
    return out


# ---------------------------------------------------------------------
# Conflicts / merging
# ---------------------------------------------------------------------

def _compatible(a: StructuralPatch, b: StructuralPatch) -> bool:
    # an insertion addresses the gap before a step, not the step itself
    if a.op is PatchOp.INSERT_STEP or b.op is PatchOp.INSERT_STEP:
        return True
    if not a.path.overlaps(b.path):
        return True
    return a == b


def find_conflicts(patches: Iterable[StructuralPatch]) -> List[Tuple[StructuralPatch, StructuralPatch]]:
    """Pairs of patches that touch the same (or a nested) path incompatibly."""
    unique = sorted(_unique(patches), key=lambda p: p.sort_key())
    pairs: List[Tuple[StructuralPatch, StructuralPatch]] = []
    for i, a in enumerate(unique):
        for b in unique[i + 1:]:
            if not _compatible(a, b):
                pairs.append((a, b))
    return pairs


def merge_patches(patches: Iterable[StructuralPatch]) -> Tuple[StructuralPatch, ...]:
    """
    Deduplicate, and fold same-path insert-step patches into one.

    The result is sorted, so it does not depend on input order.
    """
    unique = _unique(patches)
    inserts: Dict[PatchPath, List[StructuralPatch]] = {}
    out: List[StructuralPatch] = []
    for p in unique:
        if p.op is PatchOp.INSERT_STEP:
            inserts.setdefault(p.path, []).append(p)
        else:
            out.append(p)

    for path, group in inserts.items():
        steps: List[Any] = []
        for p in sorted(group, key=lambda p: p.sort_key()):
            for s in p.value:
                if s not in steps:
                    steps.append(s)
        out.append(StructuralPatch(PatchOp.INSERT_STEP, path, tuple(steps)))

    return tuple(sorted(out, key=lambda p: p.sort_key()))


# ---------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------

def _container(data: Dict[str, Any], patch: StructuralPatch) -> Dict[str, Any]:
    path = patch.path
    if path.job is None:
        if path.step is not None:
            raise InvalidPatchError("a step index needs a job", target=patch.target)
        return data

    jobs = data.get("jobs") or {}
    if path.job not in jobs:
        raise InvalidPatchError(f"unknown job '{path.job}'", target=patch.target)
    job = jobs[path.job]
    if path.step is None:
        return job

    steps = job.get("steps") or []
    if not 0 <= path.step < len(steps):
        raise InvalidPatchError(f"step index {path.step} out of range", target=patch.target)
    return steps[path.step]


def _set_dotted(container: Dict[str, Any], dotted: str, value: Any, target: str) -> None:
    keys = dotted.split(".")
    node = container
    for k in keys[:-1]:
        nxt = node.get(k)
        if nxt is None:
            nxt = {}
            node[k] = nxt
        if not isinstance(nxt, dict):
            raise InvalidPatchError(f"'{k}' is not a mapping", target=target)
        node = nxt
    node[keys[-1]] = value


def _remove_dotted(container: Dict[str, Any], dotted: str) -> None:
    keys = dotted.split(".")
    node: Any = container
    for k in keys[:-1]:
        node = node.get(k) if isinstance(node, dict) else None
        if node is None:
            return
    if isinstance(node, dict):
        node.pop(keys[-1], None)


def apply_patches(definition: PipelineDefinition, patches: Iterable[StructuralPatch]) -> PipelineDefinition:
    """
    Apply `patches` atomically and return a new definition.

    Raises PatchConflictError before touching anything when patches
    conflict, and InvalidPatchError when the result would not be a sound
    pipeline (unknown job, bad index, dangling `needs`, cycle).
    """
    patches = list(patches)
    conflicts = find_conflicts(patches)
    if conflicts:
        raise PatchConflictError(conflicts=conflicts)

    merged = merge_patches(patches)
    data = definition_to_dict(definition)

    for p in merged:
        if p.op is PatchOp.INSERT_STEP:
            continue
        if not p.path.field:
            raise InvalidPatchError(f"{p.op.value} needs a field", target=p.target)
        container = _container(data, p)
        if p.op is PatchOp.SET_FIELD:
            _set_dotted(container, p.path.field, p.plain_value(), p.target)
        else:
            _remove_dotted(container, p.path.field)

    # descending index per job, so every index still points into the original steps
    inserts = [p for p in merged if p.op is PatchOp.INSERT_STEP]
    for p in sorted(inserts, key=lambda p: (p.path.job or "", -(p.path.step or 0))):
        if p.path.job is None or p.path.job not in definition.jobs or p.path.step is None:
            raise InvalidPatchError("insert-step needs an existing job and a step index", target=p.target)
        original = definition.jobs[p.path.job].steps
        if not 0 <= p.path.step <= len(original):
            raise InvalidPatchError(f"step index {p.path.step} out of range", target=p.target)
        new_steps = [step_to_dict(s) for s in p.value if s not in original]
        if not new_steps:
            continue
        steps = data["jobs"][p.path.job].setdefault("steps", [])
        steps[p.path.step:p.path.step] = new_steps

    try:
        result = definition_from_dict(data, strict=True)
        parse(serialize(result), strict=True)
        build_graph(result)
    except (ParseError, CycleError) as e:
        raise InvalidPatchError(f"patched pipeline is invalid: {e}") from e
    return result
