# findings.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

from .patches import StructuralPatch


class Kind(str, Enum):
    CACHING = "caching"
    PARALLELIZATION = "parallelization"
    RESOURCE = "resource"
    SECURITY = "security"
    MATRIX = "matrix"
    DEPENDENCY = "dependency"
    VALIDITY = "validity"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


@dataclass(frozen=True)
class Finding:
    """
    One detected issue.

    `penalty` is the score impact the producing analyzer charges for it;
    `degraded` marks findings that stand in for a rule that failed to run.
    """
    rule: str
    kind: Kind
    severity: Severity
    title: str
    description: str
    estimated_time_saving: int = 0
    patches: Tuple[StructuralPatch, ...] = ()
    subject: str = ""
    penalty: int = 0
    degraded: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "estimated_time_saving": self.estimated_time_saving,
            "subject": self.subject,
            "penalty": self.penalty,
            "degraded": self.degraded,
            "patches": [p.to_dict() for p in self.patches],
            "details": dict(self.details),
        }
