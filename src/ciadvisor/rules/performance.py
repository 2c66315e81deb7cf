# rules/performance.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from ..config import EngineConfig, Policy
from ..dag import DependencyGraph, ExecutionPlan, build_graph, critical_path
from ..findings import Finding, Kind, Severity
from ..model import ActionStep, Job, PipelineDefinition, Step
from ..parser import iter_strings, job_to_dict
from ..patches import StructuralPatch, insert_steps, remove_field, set_field
from ..registry import Registry, RunnerProfile
from . import RuleContext, rule, run_rules

DOCKER_BUILD_RE = re.compile(r"\bdocker\s+(?:buildx\s+)?build\b")
DEPLOY_JOB_RE = re.compile(r"deploy|release|publish", re.I)
BUILDX_CACHE_DIR = "/tmp/.buildx-cache"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def is_cache_step(step: Step) -> bool:
    """`actions/cache`, or a `setup-*` action with its `cache` input set."""
    if not isinstance(step, ActionStep):
        return False
    name = step.action_name
    if name == "actions/cache" or name.startswith("actions/cache/"):
        return True
    if name.startswith("actions/setup-") and step.with_.get("cache"):
        return True
    return False


def estimate_job_seconds(job: Job, registry: Registry, config: EngineConfig) -> int:
    if not job.steps:
        return config.default_job_seconds
    return sum(registry.estimate_step_seconds(s) for s in job.steps)


def job_durations(definition: PipelineDefinition, registry: Registry, config: EngineConfig) -> Dict[str, int]:
    return {name: estimate_job_seconds(job, registry, config) for name, job in definition.jobs.items()}


def _step_ref(job: str, index: int, step: Step) -> str:
    return f"job '{job}' step {index + 1} ('{step.label}')"


# ---------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------

@rule("missing-dependency-cache", Kind.CACHING)
def missing_dependency_cache(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for job_name, job in ctx.definition.jobs.items():
        for strategy in ctx.registry.cache_strategies:
            for index, step in job.run_steps():
                if not strategy.matches(step.run):
                    continue
                if not any(is_cache_step(s) for s in job.steps[:index]):
                    findings.append(
                        Finding(
                            rule="missing-dependency-cache",
                            kind=Kind.CACHING,
                            severity=Severity.MEDIUM,
                            title=f"Cache {strategy.ecosystem} dependencies in '{job_name}'",
                            description=(
                                f"{_step_ref(job_name, index, step)} installs {strategy.ecosystem} "
                                f"dependencies without a cache; every run downloads them again."
                            ),
                            estimated_time_saving=strategy.estimated_saving,
                            patches=(insert_steps(job_name, index, strategy.cache_step()),),
                            subject=f"{job_name}/{strategy.ecosystem}",
                            details={"job": job_name, "ecosystem": strategy.ecosystem},
                        )
                    )
                # only the first install step of an ecosystem matters
                break
    return findings


@rule("docker-layer-cache", Kind.CACHING)
def docker_layer_cache(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for job_name, job in ctx.definition.jobs.items():
        for index, step in job.run_steps():
            if not DOCKER_BUILD_RE.search(step.run) or "--cache-from" in step.run:
                continue
            if any(is_cache_step(s) for s in job.steps[:index]):
                break
            cached_run = DOCKER_BUILD_RE.sub(
                "docker buildx build"
                f" --cache-from type=local,src={BUILDX_CACHE_DIR}"
                f" --cache-to type=local,dest={BUILDX_CACHE_DIR},mode=max --load",
                step.run,
                count=1,
            )
            cache = ActionStep(
                uses="actions/cache@v4",
                name="Cache Docker layers",
                with_={
                    "path": BUILDX_CACHE_DIR,
                    "key": "${{ runner.os }}-buildx-${{ github.sha }}",
                    "restore-keys": "${{ runner.os }}-buildx-",
                },
            )
            findings.append(
                Finding(
                    rule="docker-layer-cache",
                    kind=Kind.CACHING,
                    severity=Severity.MEDIUM,
                    title=f"Cache Docker layers in '{job_name}'",
                    description=f"{_step_ref(job_name, index, step)} builds an image without layer caching.",
                    estimated_time_saving=ctx.config.docker_cache_saving,
                    patches=(
                        insert_steps(job_name, index, ActionStep(uses="docker/setup-buildx-action@v3"), cache),
                        set_field(cached_run, job=job_name, step=index, field="run"),
                    ),
                    subject=f"{job_name}/docker",
                    details={"job": job_name, "ecosystem": "docker"},
                )
            )
            break
    return findings


# ---------------------------------------------------------------------
# Parallelization
# ---------------------------------------------------------------------

def _removable_needs(job: Job, graph: DependencyGraph) -> Tuple[str, ...]:
    """Dependencies the job does not consume (no `needs.<dep>` outputs, no artifacts)."""
    if DEPLOY_JOB_RE.search(job.name) or "environment" in job.extras:
        return ()
    if any(s.action_name.startswith("actions/download-artifact") for _i, s in job.action_steps()):
        return ()
    text = "\n".join(iter_strings(job_to_dict(job)))
    out: List[str] = []
    for dep in graph.dependencies(job.name):
        if re.search(r"\bneeds\.%s\b" % re.escape(dep), text):
            continue
        out.append(dep)
    return tuple(out)


@rule("sequential-jobs", Kind.PARALLELIZATION)
def sequential_jobs(ctx: RuleContext) -> List[Finding]:
    jobs = ctx.definition.jobs
    plan = ctx.plan
    if plan is None or len(jobs) <= 1:
        return []
    first_wave = plan.waves[0] if plan.waves else ()
    if len(first_wave) * 2 >= len(jobs):
        return []

    graph = ctx.graph or build_graph(ctx.definition)
    removable: Dict[str, Tuple[str, ...]] = {}
    for name in sorted(jobs):
        if name in graph.dangling:
            continue
        drop = _removable_needs(jobs[name], graph)
        if drop:
            removable[name] = drop

    patches: List[StructuralPatch] = []
    for name, drop in removable.items():
        keep = [n for n in jobs[name].needs if n not in drop]
        if keep:
            patches.append(set_field(keep, job=name, field="needs"))
        else:
            patches.append(remove_field(job=name, field="needs"))

    saving = 0
    if removable:
        durations = job_durations(ctx.definition, ctx.registry, ctx.config)
        _path, before = critical_path(graph, durations)
        _path, after = critical_path(graph.without_edges(removable), durations)
        saving = max(0, before - after)

    waves = len(plan.waves)
    return [
        Finding(
            rule="sequential-jobs",
            kind=Kind.PARALLELIZATION,
            severity=Severity.MEDIUM,
            title="Run independent jobs in parallel",
            description=(
                f"Only {len(first_wave)} of {len(jobs)} jobs can start immediately; the pipeline runs "
                f"in {waves} sequential wave(s). "
                + (
                    "Dependencies that pass no outputs: "
                    + ", ".join(f"{n} -> {', '.join(d)}" for n, d in removable.items())
                    if removable
                    else "No dependency could be removed safely."
                )
            ),
            estimated_time_saving=saving,
            patches=tuple(patches),
            subject="jobs",
            details={"removable": {n: list(d) for n, d in removable.items()}},
        )
    ]


@rule("dangling-dependency", Kind.DEPENDENCY)
def dangling_dependency(ctx: RuleContext) -> List[Finding]:
    graph = ctx.graph
    if graph is None:
        return []
    findings: List[Finding] = []
    for name, missing in sorted(graph.dangling.items()):
        job = ctx.definition.jobs[name]
        keep = [n for n in job.needs if n not in missing]
        patch = set_field(keep, job=name, field="needs") if keep else remove_field(job=name, field="needs")
        blocked = [n for n in graph.unschedulable if n != name]
        findings.append(
            Finding(
                rule="dangling-dependency",
                kind=Kind.DEPENDENCY,
                severity=Severity.HIGH,
                title=f"Job '{name}' needs a job that does not exist",
                description=(
                    f"Job '{name}' needs unknown job(s) {', '.join(missing)} and can never run"
                    + (f"; also blocked: {', '.join(blocked)}." if blocked else ".")
                ),
                patches=(patch,),
                subject=name,
                details={"missing": list(missing), "unschedulable": list(graph.unschedulable)},
            )
        )
    return findings


# ---------------------------------------------------------------------
# Matrix / resources
# ---------------------------------------------------------------------

@rule("inefficient-matrix", Kind.MATRIX)
def inefficient_matrix(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    threshold = ctx.config.matrix_threshold
    for job_name, job in ctx.definition.jobs.items():
        size = job.matrix_size
        if not job.matrix or size <= threshold:
            continue

        axes = {axis: list(values) for axis, values in job.matrix.items()}
        reduced: Dict[str, list] = {}
        new_size = size
        while new_size > threshold:
            candidates = [
                a for a, v in axes.items()
                if len(v) > 2 and a not in reduced and "." not in a
            ]
            if not candidates:
                break
            axis = sorted(candidates, key=lambda a: (-len(axes[a]), a))[0]
            reduced[axis] = [axes[axis][0], axes[axis][-1]]
            new_size = new_size // len(axes[axis]) * 2

        patches = tuple(
            set_field(values, job=job_name, field=f"strategy.matrix.{axis}")
            for axis, values in sorted(reduced.items())
        )
        removed = size - new_size
        findings.append(
            Finding(
                rule="inefficient-matrix",
                kind=Kind.MATRIX,
                severity=Severity.MEDIUM,
                title=f"Reduce the build matrix of '{job_name}'",
                description=(
                    f"Job '{job_name}' expands to {size} combinations (limit {threshold})."
                    + (f" Testing only the first and last value of {', '.join(sorted(reduced))} "
                       f"leaves {new_size}." if reduced else "")
                ),
                estimated_time_saving=removed * ctx.config.matrix_leg_seconds,
                patches=patches,
                subject=job_name,
                details={"combinations": size, "reduced_to": new_size},
            )
        )
    return findings


@rule("runner-mismatch", Kind.RESOURCE)
def runner_mismatch(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    for job_name, job in ctx.definition.jobs.items():
        if len(job.steps) <= ctx.config.runner_step_threshold:
            continue
        if not ctx.registry.is_default_runner(job.runs_on):
            continue
        seconds = estimate_job_seconds(job, ctx.registry, ctx.config)
        saving = int(seconds * ctx.config.runner_saving_ratio)
        details = {"current_runner": job.runs_on, "recommended_runner": ctx.config.large_runner}
        current = ctx.registry.runner_profile(job.runs_on)
        large = ctx.registry.runner_profile(ctx.config.large_runner)
        if current is not None and large is not None:
            details.update(_runner_impact(current, large, seconds, saving))
        findings.append(
            Finding(
                rule="runner-mismatch",
                kind=Kind.RESOURCE,
                severity=Severity.LOW,
                title=f"Use a larger runner for '{job_name}'",
                description=(
                    f"Job '{job_name}' has {len(job.steps)} steps on the default runner "
                    f"'{job.runs_on}'; a larger runner shortens it."
                    + (f" Cost per run: {details['cost_impact']}." if "cost_impact" in details else "")
                ),
                estimated_time_saving=saving,
                patches=(set_field(ctx.config.large_runner, job=job_name, field="runs-on"),),
                subject=job_name,
                details=details,
            )
        )
    return findings


def _runner_impact(current: RunnerProfile, large: RunnerProfile, seconds: int, saving: int) -> Dict[str, Any]:
    """Per-run cost before and after the switch, and the mean cpu/memory gain."""
    cost_now = seconds / 60 * current.cost_per_minute
    cost_after = (seconds - saving) / 60 * large.cost_per_minute
    if cost_after > cost_now:
        impact = "increase"
    elif cost_after < cost_now:
        impact = "decrease"
    else:
        impact = "neutral"
    gain = (large.cpu / current.cpu + large.memory_gb / current.memory_gb) / 2 - 1
    return {
        "cost_impact": impact,
        "cost_per_run": {"current": round(cost_now, 4), "recommended": round(cost_after, 4)},
        "performance_impact": round(gain, 2),
    }


@rule("slow-step", Kind.RESOURCE)
def slow_step(ctx: RuleContext) -> List[Finding]:
    findings: List[Finding] = []
    limit = ctx.config.slow_step_seconds
    for job_name, job in ctx.definition.jobs.items():
        for index, step in enumerate(job.steps):
            seconds = ctx.registry.estimate_step_seconds(step)
            if seconds <= limit:
                continue
            findings.append(
                Finding(
                    rule="slow-step",
                    kind=Kind.RESOURCE,
                    severity=Severity.LOW,
                    title=f"Speed up a slow step in '{job_name}'",
                    description=(
                        f"{_step_ref(job_name, index, step)} takes about "
                        f"{round(seconds / 60)} minutes; cache its inputs or split it up."
                    ),
                    subject=f"{job_name}/{index}",
                    details={"job": job_name, "step": index, "estimated_seconds": seconds},
                )
            )
    return findings


@rule("dependency-wait", Kind.DEPENDENCY)
def dependency_wait(ctx: RuleContext) -> List[Finding]:
    limit = ctx.config.max_needs
    return [
        Finding(
            rule="dependency-wait",
            kind=Kind.DEPENDENCY,
            severity=Severity.LOW,
            title=f"Job '{job_name}' waits on many jobs",
            description=(
                f"Job '{job_name}' waits for {len(job.needs)} dependencies "
                f"({', '.join(job.needs)}); drop the ones it does not consume."
            ),
            subject=job_name,
            details={"needs": list(job.needs), "estimated_wait": ctx.config.dependency_wait_seconds},
        )
        for job_name, job in ctx.definition.jobs.items()
        if len(job.needs) > limit
    ]


@rule("max-complexity", Kind.RESOURCE)
def max_complexity(ctx: RuleContext) -> List[Finding]:
    limit = ctx.policy.max_complexity
    if limit is None:
        return []
    return [
        Finding(
            rule="max-complexity",
            kind=Kind.RESOURCE,
            severity=Severity.MEDIUM,
            title=f"Split job '{job_name}'",
            description=f"Job '{job_name}' has {len(job.steps)} steps; policy allows at most {limit}.",
            subject=job_name,
        )
        for job_name, job in ctx.definition.jobs.items()
        if len(job.steps) > limit
    ]


PERFORMANCE_RULES = (
    missing_dependency_cache,
    docker_layer_cache,
    sequential_jobs,
    dangling_dependency,
    inefficient_matrix,
    runner_mismatch,
    slow_step,
    dependency_wait,
    max_complexity,
)


def analyze_performance(
    definition: PipelineDefinition,
    plan: ExecutionPlan,
    *,
    graph: Optional[DependencyGraph] = None,
    registry: Optional[Registry] = None,
    policy: Optional[Policy] = None,
    config: Optional[EngineConfig] = None,
) -> List[Finding]:
    ctx = RuleContext(
        definition=definition,
        plan=plan,
        graph=graph or build_graph(definition),
        registry=registry or Registry.default(),
        policy=policy or Policy(),
        config=config or EngineConfig(),
    )
    return run_rules(PERFORMANCE_RULES, ctx)


def performance_score(findings: List[Finding], config: Optional[EngineConfig] = None) -> int:
    """100 minus the per-kind deduction of every non-degraded finding, floored at 0."""
    config = config or EngineConfig()
    total = sum(
        config.performance_deductions.get(f.kind.value, 0)
        for f in findings
        if not f.degraded
    )
    return max(0, 100 - total)
