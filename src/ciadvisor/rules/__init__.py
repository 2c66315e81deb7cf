# rules/__init__.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from ..config import EngineConfig, Policy
from ..dag import DependencyGraph, ExecutionPlan
from ..findings import Finding, Kind, Severity
from ..model import PipelineDefinition
from ..registry import Registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleContext:
    definition: PipelineDefinition
    plan: Optional[ExecutionPlan] = None
    graph: Optional[DependencyGraph] = None
    registry: Registry = field(default_factory=Registry.default)
    policy: Policy = field(default_factory=Policy)
    config: EngineConfig = field(default_factory=EngineConfig)


@dataclass(frozen=True)
class Rule:
    name: str
    kind: Kind
    check: Callable[[RuleContext], List[Finding]]

    def __call__(self, ctx: RuleContext) -> List[Finding]:
        return self.check(ctx)


def rule(name: str, kind: Kind) -> Callable[[Callable[[RuleContext], List[Finding]]], Rule]:
    """Register a plain `(ctx) -> list[Finding]` function as a named rule."""
    def wrap(fn: Callable[[RuleContext], List[Finding]]) -> Rule:
        return Rule(name=name, kind=kind, check=fn)
    return wrap


def run_rules(rules: Iterable[Rule], ctx: RuleContext) -> List[Finding]:
    """
    Evaluate every rule independently.

    A rule that raises does not stop the others: it is logged and replaced
    by one degraded, low-severity finding carrying the error text.
    """
    findings: List[Finding] = []
    for r in rules:
        try:
            findings.extend(r(ctx))
        except Exception as e:
            logger.warning("rule %s failed: %s", r.name, e, exc_info=logger.isEnabledFor(logging.DEBUG))
            findings.append(
                Finding(
                    rule=r.name,
                    kind=r.kind,
                    severity=Severity.LOW,
                    title=f"Rule '{r.name}' could not be evaluated",
                    description=f"Rule '{r.name}' failed: {e}",
                    subject=r.name,
                    degraded=True,
                )
            )
    return findings
