# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, Optional, Tuple, Union

# owner/repo[/path]@ref
ACTION_REF_RE = re.compile(
    r"^(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+)(?P<path>/[^@\s]+)?@(?P<version>[A-Za-z0-9_./+-]+)$"
)


@dataclass(frozen=True)
class ActionRef:
    """Parsed `owner/repo[/path]@version` reference."""
    owner: str
    repo: str
    version: str
    path: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def full_name(self) -> str:
        return f"{self.name}{self.path or ''}"

    @classmethod
    def parse(cls, uses: str) -> Optional["ActionRef"]:
        m = ACTION_REF_RE.match(uses.strip())
        if not m:
            return None
        return cls(
            owner=m.group("owner"),
            repo=m.group("repo"),
            version=m.group("version"),
            path=m.group("path"),
        )


@dataclass(frozen=True)
class Trigger:
    """One entry of the `on:` block."""
    event: str
    config: Any = None


@dataclass(frozen=True)
class ActionStep:
    """A step that invokes an action (`uses:`)."""
    uses: str
    name: Optional[str] = None
    condition: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        return self.uses.startswith("./")

    @property
    def is_docker(self) -> bool:
        return self.uses.startswith("docker://")

    @property
    def reference(self) -> Optional[ActionRef]:
        return ActionRef.parse(self.uses)

    @property
    def action_name(self) -> str:
        """`owner/repo` for marketplace actions, the raw reference otherwise."""
        ref = self.reference
        if ref is not None:
            return ref.full_name
        return self.uses.split("@", 1)[0]

    @property
    def label(self) -> str:
        return self.name or self.uses


@dataclass(frozen=True)
class RunStep:
    """A step that runs shell text (`run:`)."""
    run: str
    name: Optional[str] = None
    condition: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def shell(self) -> Optional[str]:
        value = self.extras.get("shell")
        return str(value) if value is not None else None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        first = self.run.strip().splitlines()[0] if self.run.strip() else ""
        return first[:60]


Step = Union[ActionStep, RunStep]


@dataclass(frozen=True)
class Job:
    """
    A pipeline job: runner + ordered steps + dependencies.

    `needs` keeps declaration order and holds no duplicates.
    `matrix` only holds list-valued axes; `include`/`exclude` and
    expression-valued axes live in `matrix_extras`.
    """
    name: str
    runs_on: Any = None
    steps: Tuple[Step, ...] = ()
    needs: Tuple[str, ...] = ()
    matrix: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    matrix_extras: Dict[str, Any] = field(default_factory=dict)
    strategy: Dict[str, Any] = field(default_factory=dict)
    permissions: Any = None
    env: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def matrix_size(self) -> int:
        size = 1
        for values in self.matrix.values():
            size *= len(values)
        return size

    @property
    def is_reusable_call(self) -> bool:
        return "uses" in self.extras

    def action_steps(self) -> Iterator[Tuple[int, ActionStep]]:
        for i, step in enumerate(self.steps):
            if isinstance(step, ActionStep):
                yield i, step

    def run_steps(self) -> Iterator[Tuple[int, RunStep]]:
        for i, step in enumerate(self.steps):
            if isinstance(step, RunStep):
                yield i, step


@dataclass(frozen=True)
class PipelineDefinition:
    """
    A whole pipeline: triggers + jobs.

    Instances are never mutated; the patch applicator builds new ones.
    """
    name: Optional[str] = None
    triggers: Tuple[Trigger, ...] = ()
    permissions: Any = None
    env: Dict[str, Any] = field(default_factory=dict)
    jobs: Dict[str, Job] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def trigger_events(self) -> Tuple[str, ...]:
        return tuple(t.event for t in self.triggers)

    @property
    def is_empty(self) -> bool:
        return not self.jobs and not self.triggers

    def job(self, name: str) -> Job:
        try:
            return self.jobs[name]
        except KeyError:
            raise KeyError(f"Unknown job '{name}'. Known jobs: {sorted(self.jobs)}") from None

    def iter_steps(self) -> Iterator[Tuple[str, int, Step]]:
        for job_name, job in self.jobs.items():
            for i, step in enumerate(job.steps):
                yield job_name, i, step

    def with_job(self, job: Job) -> "PipelineDefinition":
        jobs = dict(self.jobs)
        jobs[job.name] = job
        return replace(self, jobs=jobs)
