# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple


class AnalysisError(Exception):
    """Base class for every error raised by ciadvisor."""


@dataclass
class ParseError(AnalysisError):
    """Pipeline text could not be turned into a PipelineDefinition."""
    line: int
    message: str

    def __str__(self) -> str:
        if self.line:
            return f"line {self.line}: {self.message}"
        return self.message


@dataclass
class DanglingReferenceError(ParseError):
    """A job `needs` a job that does not exist."""
    job: str = ""
    missing: Tuple[str, ...] = ()

    def __str__(self) -> str:
        names = ", ".join(self.missing)
        where = f"line {self.line}: " if self.line else ""
        return f"{where}job '{self.job}' needs unknown job(s): {names}"


@dataclass
class CycleError(AnalysisError):
    """The `needs` relation is not acyclic. `members` is the cycle in traversal order."""
    members: Tuple[str, ...]

    def __str__(self) -> str:
        if not self.members:
            return "dependency cycle"
        chain = " -> ".join(list(self.members) + [self.members[0]])
        return f"dependency cycle: {chain}"


@dataclass
class PatchConflictError(AnalysisError):
    """Two or more selected patches touch the same path incompatibly."""
    conflicts: List[Tuple[Any, Any]] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"{len(self.conflicts)} conflicting patch pair(s)"]
        for a, b in self.conflicts:
            lines.append(f"{a.op.value} {a.target} <-> {b.op.value} {b.target}")
        return "\n".join(lines)


@dataclass
class InvalidPatchError(AnalysisError):
    """Applying patches would produce a structurally unsound pipeline."""
    message: str
    target: str = ""

    def __str__(self) -> str:
        if self.target:
            return f"{self.target}: {self.message}"
        return self.message


@dataclass
class UnknownRecommendationError(AnalysisError):
    ids: Sequence[str]

    def __str__(self) -> str:
        return f"unknown recommendation id(s): {', '.join(self.ids)}"


@dataclass
class UnresolvedConflictError(AnalysisError):
    """A coordination plan still carries conflicts that need a caller decision."""
    conflicts: Sequence[Any]

    def __str__(self) -> str:
        lines = [f"{len(self.conflicts)} unresolved coordination conflict(s)"]
        for c in self.conflicts:
            lines.append(f"{c.type.value}: {c.description}")
        return "\n".join(lines)


@dataclass
class PolicyError(AnalysisError):
    """A policy document is missing, unreadable or invalid."""
    source: str
    message: str

    def __str__(self) -> str:
        return f"{self.source}: {self.message}"
