# rules/security.py
from __future__ import annotations

import re
from fnmatch import fnmatchcase
from typing import Dict, List, Optional, Set

from ..config import EngineConfig, Policy
from ..findings import Finding, Kind, Severity
from ..model import ActionRef, PipelineDefinition
from ..parser import EXPRESSION_RE, SECRET_NAME_RE
from ..patches import set_field
from ..registry import Registry
from . import RuleContext, rule, run_rules

UNTRUSTED_ACTION_RULE = "untrusted-action"


def _is_write_all(permissions) -> bool:
    if permissions == "write-all":
        return True
    if isinstance(permissions, dict):
        return any(v == "write-all" for v in permissions.values())
    return False


@rule("excessive-permissions", Kind.SECURITY)
def excessive_permissions(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    penalty = ctx.config.severity_weights.high
    read_only = {"contents": "read"}

    if _is_write_all(ctx.definition.permissions):
        findings.append(
            Finding(
                rule="excessive-permissions",
                kind=Kind.SECURITY,
                severity=Severity.HIGH,
                title="Restrict pipeline permissions",
                description="The pipeline grants write-all permissions to every job's token.",
                patches=(set_field(read_only, field="permissions"),),
                subject="permissions",
                penalty=penalty,
            )
        )
    for job_name, job in ctx.definition.jobs.items():
        if _is_write_all(job.permissions):
            findings.append(
                Finding(
                    rule="excessive-permissions",
                    kind=Kind.SECURITY,
                    severity=Severity.HIGH,
                    title=f"Restrict permissions of '{job_name}'",
                    description=f"Job '{job_name}' grants write-all permissions to its token.",
                    patches=(set_field(read_only, job=job_name, field="permissions"),),
                    subject=job_name,
                    penalty=penalty,
                )
            )
    return findings


@rule("risky-trigger", Kind.SECURITY)
def risky_trigger(ctx: RuleContext) -> List[Finding]:
    if "pull_request_target" not in ctx.definition.trigger_events:
        return []
    return [
        Finding(
            rule="risky-trigger",
            kind=Kind.SECURITY,
            severity=Severity.MEDIUM,
            title="Review the pull_request_target trigger",
            description=(
                "pull_request_target runs with repository secrets and a write token on "
                "code from forks; make sure no job checks out or runs the pull request head."
            ),
            subject="on.pull_request_target",
            penalty=ctx.config.severity_weights.medium,
        )
    ]


def _env_name(expression: str, taken: Set[str]) -> str:
    parts = [
        p for p in re.split(r"[^A-Za-z0-9]+", expression)
        if p and not p.isdigit() and p not in ("github", "event")
    ]
    base = "_".join(parts[-2:]).upper() or "UNTRUSTED_INPUT"
    name, i = base, 2
    while name in taken:
        name = f"{base}_{i}"
        i += 1
    taken.add(name)
    return name


def _quote_state(text: str) -> str:
    """Shell quoting in effect at the end of `text`: '', '"' or "'"."""
    state = ""
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\" and state != "'":
            escaped = True
        elif ch == '"' and state != "'":
            state = "" if state == '"' else '"'
        elif ch == "'" and state != '"':
            state = "" if state == "'" else "'"
    return state


def _env_reference(var: str, quote: str, powershell: bool) -> str:
    if powershell:
        return f"$env:{var}"
    if quote == '"':
        return f"${{{var}}}"
    if quote == "'":
        # close the single quotes around a double-quoted expansion
        return f"'\"${{{var}}}\"'"
    return f"\"${{{var}}}\""


@rule("expression-injection", Kind.SECURITY)
def expression_injection(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    definition = ctx.definition
    for job_name, job in definition.jobs.items():
        for index, step in job.run_steps():
            dangerous = [
                m for m in EXPRESSION_RE.finditer(step.run)
                if ctx.registry.dangerous_in(m.group(1))
            ]
            if not dangerous:
                continue

            taken = set(definition.env) | set(job.env) | set(step.env)
            names: Dict[str, str] = {}
            for m in dangerous:
                expr = m.group(1).strip()
                if expr not in names:
                    names[expr] = _env_name(expr, taken)

            powershell = (step.shell or "").startswith(("pwsh", "powershell"))
            pieces: List[str] = []
            last = 0
            for m in dangerous:
                var = names[m.group(1).strip()]
                pieces.append(step.run[last:m.start()])
                pieces.append(_env_reference(var, _quote_state(step.run[:m.start()]), powershell))
                last = m.end()
            pieces.append(step.run[last:])
            new_run = "".join(pieces)
            new_env = dict(step.env)
            for expr, var in names.items():
                new_env[var] = "${{ " + expr + " }}"

            findings.append(
                Finding(
                    rule="expression-injection",
                    kind=Kind.SECURITY,
                    severity=Severity.HIGH,
                    title=f"Pass untrusted input through env in '{job_name}'",
                    description=(
                        f"Job '{job_name}' step {index + 1} ('{step.label}') interpolates "
                        f"{', '.join(sorted(names))} directly into shell text, allowing command injection."
                    ),
                    patches=(
                        set_field(new_env, job=job_name, step=index, field="env"),
                        set_field(new_run, job=job_name, step=index, field="run"),
                    ),
                    subject=f"{job_name}/{index}",
                    penalty=ctx.config.injection_penalty,
                    details={"expressions": sorted(names)},
                )
            )
    return findings


def _is_trusted(name: str, ctx: RuleContext) -> bool:
    return ctx.registry.is_trusted(name) or any(fnmatchcase(name, p) for p in ctx.policy.trusted_actions)


def _referenced_actions(definition: PipelineDefinition) -> Dict[str, List[str]]:
    """action name -> where it is used, for every non-local reference."""
    used: Dict[str, List[str]] = {}
    for job_name, job in definition.jobs.items():
        workflow = job.extras.get("uses")
        if isinstance(workflow, str) and not workflow.startswith("./"):
            ref = ActionRef.parse(workflow)
            name = ref.name if ref else workflow.split("@", 1)[0]
            used.setdefault(name, []).append(job_name)
        for index, step in job.action_steps():
            if step.is_local:
                continue
            used.setdefault(step.action_name, []).append(f"{job_name}[{index}]")
    return used


@rule(UNTRUSTED_ACTION_RULE, Kind.SECURITY)
def untrusted_actions(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for name, where in sorted(_referenced_actions(ctx.definition).items()):
        if _is_trusted(name, ctx):
            continue
        findings.append(
            Finding(
                rule=UNTRUSTED_ACTION_RULE,
                kind=Kind.SECURITY,
                severity=Severity.MEDIUM,
                title=f"Review third-party action '{name}'",
                description=f"'{name}' is not in the trust registry (used in {', '.join(where)}).",
                subject=name,
                penalty=ctx.config.untrusted_action_weight,
            )
        )
    return findings


@rule("forbidden-action", Kind.SECURITY)
def forbidden_actions(ctx: RuleContext) -> List[Finding]:
    patterns = ctx.policy.forbidden_actions
    if not patterns:
        return []
    findings: List[Finding] = []
    for name, where in sorted(_referenced_actions(ctx.definition).items()):
        if any(fnmatchcase(name, p) for p in patterns):
            findings.append(
                Finding(
                    rule="forbidden-action",
                    kind=Kind.SECURITY,
                    severity=Severity.HIGH,
                    title=f"Remove forbidden action '{name}'",
                    description=f"Policy forbids '{name}' (used in {', '.join(where)}).",
                    subject=name,
                    penalty=ctx.config.severity_weights.high,
                )
            )
    return findings


@rule("secret-in-condition", Kind.SECURITY)
def secret_in_condition(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for job_name, job in ctx.definition.jobs.items():
        places = []
        if job.condition and SECRET_NAME_RE.search(job.condition):
            places.append((job_name, job.condition))
        for index, step in enumerate(job.steps):
            if step.condition and SECRET_NAME_RE.search(step.condition):
                places.append((f"{job_name}/{index}", step.condition))
        for subject, condition in places:
            findings.append(
                Finding(
                    rule="secret-in-condition",
                    kind=Kind.SECURITY,
                    severity=Severity.LOW,
                    title="Avoid secrets in conditions",
                    description=f"Condition '{condition}' at {subject} reads a secret; use a job output or env flag.",
                    subject=subject,
                    penalty=ctx.config.severity_weights.low,
                )
            )
    return findings


SECURITY_RULES = (
    excessive_permissions,
    risky_trigger,
    expression_injection,
    untrusted_actions,
    forbidden_actions,
    secret_in_condition,
)


def analyze_security(
    definition: PipelineDefinition,
    *,
    registry: Optional[Registry] = None,
    policy: Optional[Policy] = None,
    config: Optional[EngineConfig] = None,
) -> List[Finding]:
    ctx = RuleContext(
        definition=definition,
        registry=registry or Registry.default(),
        policy=policy or Policy(),
        config=config or EngineConfig(),
    )
    return run_rules(SECURITY_RULES, ctx)


def security_score(findings: List[Finding], config: Optional[EngineConfig] = None) -> int:
    """100 minus penalties; untrusted-action penalties are capped as a group."""
    config = config or EngineConfig()
    untrusted = sum(f.penalty for f in findings if f.rule == UNTRUSTED_ACTION_RULE and not f.degraded)
    other = sum(f.penalty for f in findings if f.rule != UNTRUSTED_ACTION_RULE and not f.degraded)
    return max(0, 100 - other - min(untrusted, config.untrusted_action_cap))
