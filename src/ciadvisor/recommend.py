# recommend.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import ScoreWeights
from .findings import Finding, Kind, Severity
from .patches import StructuralPatch, find_conflicts, merge_patches


@dataclass(frozen=True)
class Recommendation:
    """
    One or more findings that share a remediation.

    `patches` describe the fix; nothing here applies them.
    """
    id: str
    title: str
    kind: Kind
    priority: Severity
    estimated_time_saving: int
    description: str
    patches: Tuple[StructuralPatch, ...] = ()
    findings: Tuple[Finding, ...] = ()

    @property
    def applicable(self) -> bool:
        return bool(self.patches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "priority": self.priority.value,
            "estimated_time_saving": self.estimated_time_saving,
            "description": self.description,
            "patches": [p.to_dict() for p in self.patches],
            "rules": sorted({f.rule for f in self.findings}),
        }


@dataclass(frozen=True)
class SubScore:
    score: int
    skipped: bool = False
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"score": self.score, "skipped": self.skipped}
        if self.reason:
            out["reason"] = self.reason
        return out


# ---------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------

class _UnionFind:
    def __init__(self, n: int):
        self.parent = list(range(n))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


def _finding_key(f: Finding) -> Tuple[int, str, str, str]:
    return (-f.severity.rank, f.rule, f.subject, f.description)


def _group(findings: List[Finding]) -> List[List[Finding]]:
    uf = _UnionFind(len(findings))
    owner: Dict[str, int] = {}
    for i, f in enumerate(findings):
        for p in f.patches:
            if p.target in owner:
                uf.union(i, owner[p.target])
            else:
                owner[p.target] = i
    groups: Dict[int, List[Finding]] = {}
    for i, f in enumerate(findings):
        groups.setdefault(uf.find(i), []).append(f)
    return [sorted(g, key=_finding_key) for g in groups.values()]


def _split_conflicting(group: List[Finding]) -> List[List[Finding]]:
    """Break a group into parts whose patches can be applied together."""
    parts: List[List[Finding]] = []
    for f in group:
        for part in parts:
            if not find_conflicts([p for g in part for p in g.patches] + list(f.patches)):
                part.append(f)
                break
        else:
            parts.append([f])
    return parts


def _base_id(group: List[Finding], patches: Tuple[StructuralPatch, ...]) -> str:
    lead = group[0]
    if patches:
        return f"{lead.kind.value}:{min(p.target for p in patches)}"
    return f"{lead.kind.value}:{lead.rule}:{lead.subject}"


def merge(findings: Iterable[Finding]) -> Tuple[Recommendation, ...]:
    """
    Group findings into recommendations and rank them.

    Degraded findings carry no remediation and are left out. Findings whose
    patches conflict stay in separate recommendations, so each one applies
    on its own. Ordering is priority desc, estimated saving desc, id asc.
    """
    usable = sorted((f for f in findings if not f.degraded), key=_finding_key)
    drafts = []
    for group in _group(usable):
        for part in _split_conflicting(group):
            patches = merge_patches(p for f in part for p in f.patches)
            drafts.append((_base_id(part, patches), part, patches))

    recs: List[Recommendation] = []
    seen: Dict[str, int] = {}
    for base, group, patches in sorted(drafts, key=lambda d: (d[0], _finding_key(d[1][0]))):
        n = seen.get(base, 0) + 1
        seen[base] = n
        rec_id = base if n == 1 else f"{base}-{n}"

        lead = group[0]
        title = lead.title if len(group) == 1 else f"{lead.title} (+{len(group) - 1} related)"
        recs.append(
            Recommendation(
                id=rec_id,
                title=title,
                kind=lead.kind,
                priority=max((f.severity for f in group), key=lambda s: s.rank),
                estimated_time_saving=sum(f.estimated_time_saving for f in group),
                description="\n".join(f.description for f in group),
                patches=patches,
                findings=tuple(group),
            )
        )

    recs.sort(key=lambda r: (-r.priority.rank, -r.estimated_time_saving, r.id))
    return tuple(recs)


# ---------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------

def overall_score(sub_scores: Mapping[str, SubScore], weights: Optional[ScoreWeights] = None) -> int:
    """Rounded weighted sum; a skipped or missing sub-score counts as 0."""
    weights = weights or ScoreWeights()
    total = 0.0
    for name, weight in weights.as_dict().items():
        sub = sub_scores.get(name)
        if sub is None or sub.skipped:
            continue
        total += weight * sub.score
    return max(0, min(100, round(total)))
