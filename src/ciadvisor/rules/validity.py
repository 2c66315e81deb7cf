# rules/validity.py
"""Schema, action-reference and secret-reference checks behind the validity sub-scores."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

from ..config import Policy
from ..findings import Finding, Kind, Severity
from ..model import ActionRef, ActionStep, PipelineDefinition
from ..parser import referenced_secrets
from . import RuleContext, rule, run_rules

# secrets every runner provides
BUILTIN_SECRETS = frozenset({"GITHUB_TOKEN"})

CREDENTIAL_KEY_RE = re.compile(r"(?:^|[_-])(?:password|passwd|api[_-]?key|token|secret)$", re.I)


def _action_refs(definition: PipelineDefinition) -> Iterator[Tuple[str, str]]:
    for job_name, job in definition.jobs.items():
        workflow = job.extras.get("uses")
        if isinstance(workflow, str):
            yield job_name, workflow
        for index, step in job.action_steps():
            yield f"{job_name}[{index}]", step.uses


def _valid_ref(uses: str) -> bool:
    if uses.startswith("./"):
        return True
    if uses.startswith("docker://"):
        return len(uses) > len("docker://")
    return ActionRef.parse(uses) is not None


def _env_and_inputs(definition: PipelineDefinition) -> Iterator[Tuple[str, str, Any]]:
    for key, value in definition.env.items():
        yield "env", key, value
    for job_name, job in definition.jobs.items():
        for key, value in job.env.items():
            yield f"jobs.{job_name}.env", key, value
        job_inputs = job.extras.get("with")
        if isinstance(job_inputs, dict):
            for key, value in job_inputs.items():
                yield f"jobs.{job_name}.with", key, value
        for index, step in enumerate(job.steps):
            for key, value in step.env.items():
                yield f"jobs.{job_name}.steps[{index}].env", key, value
            if not isinstance(step, ActionStep):
                continue
            for key, value in step.with_.items():
                yield f"jobs.{job_name}.steps[{index}].with", key, value


def _hardcoded_credentials(definition: PipelineDefinition) -> List[Tuple[str, str]]:
    found = []
    for where, key, value in _env_and_inputs(definition):
        if not isinstance(value, str) or not value.strip():
            continue
        if "${{" in value:
            continue
        if CREDENTIAL_KEY_RE.search(str(key)):
            found.append((where, str(key)))
    return found


@rule("schema", Kind.VALIDITY)
def schema(ctx: RuleContext) -> List[Finding]:
    return [
        Finding(
            rule="schema",
            kind=Kind.VALIDITY,
            severity=Severity.HIGH,
            title=f"Job '{name}' has no runner",
            description=f"Job '{name}' declares neither 'runs-on' nor a reusable workflow 'uses'.",
            subject=name,
        )
        for name, job in ctx.definition.jobs.items()
        if job.runs_on is None and not job.is_reusable_call
    ]


@rule("action-reference", Kind.VALIDITY)
def action_references(ctx: RuleContext) -> List[Finding]:
    return [
        Finding(
            rule="action-reference",
            kind=Kind.VALIDITY,
            severity=Severity.MEDIUM,
            title=f"Malformed action reference '{uses}'",
            description=f"'{uses}' at {where} is not of the form owner/repo[/path]@ref, ./local or docker://image.",
            subject=where,
        )
        for where, uses in _action_refs(ctx.definition)
        if not _valid_ref(uses)
    ]


@rule("secret-reference", Kind.VALIDITY)
def secret_references(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for where, key in _hardcoded_credentials(ctx.definition):
        findings.append(
            Finding(
                rule="hardcoded-credential",
                kind=Kind.VALIDITY,
                severity=Severity.HIGH,
                title=f"Hard-coded credential '{key}'",
                description=f"'{key}' in {where} holds a literal value; store it as a secret.",
                subject=f"{where}.{key}",
            )
        )
    known = ctx.policy.known_secrets
    if known is not None:
        for name in referenced_secrets(ctx.definition):
            if name in BUILTIN_SECRETS or name in known:
                continue
            findings.append(
                Finding(
                    rule="secret-reference",
                    kind=Kind.VALIDITY,
                    severity=Severity.MEDIUM,
                    title=f"Unknown secret '{name}'",
                    description=f"Secret '{name}' is referenced but not provisioned.",
                    subject=name,
                )
            )
    return findings


VALIDITY_RULES = (schema, action_references, secret_references)


@dataclass(frozen=True)
class ValidityResult:
    schema: int
    actions: int
    secrets: int
    findings: Tuple[Finding, ...]


def _share(valid: int, total: int) -> int:
    if total == 0:
        return 100
    return round(100 * valid / total)


def check_validity(definition: PipelineDefinition, *, policy: Optional[Policy] = None) -> ValidityResult:
    policy = policy or Policy()
    findings = run_rules(VALIDITY_RULES, RuleContext(definition=definition, policy=policy))

    def count(rule_name: str) -> int:
        return sum(1 for f in findings if f.rule == rule_name and not f.degraded)

    schema_score = 0 if count("schema") else 100
    refs = list(_action_refs(definition))
    actions_score = _share(len(refs) - count("action-reference"), len(refs))

    if count("hardcoded-credential"):
        secrets_score = 0
    elif policy.known_secrets is None:
        secrets_score = 100
    else:
        names = [n for n in referenced_secrets(definition) if n not in BUILTIN_SECRETS]
        secrets_score = _share(len(names) - count("secret-reference"), len(names))

    return ValidityResult(
        schema=schema_score,
        actions=actions_score,
        secrets=secrets_score,
        findings=tuple(findings),
    )
