# registry.py
"""
Static knowledge tables used by the rule evaluators.

Loaded once per Engine and never mutated; `with_trusted` returns a copy.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple

from .model import ActionStep, RunStep, Step


@dataclass(frozen=True)
class CacheStrategy:
    ecosystem: str
    install_patterns: Tuple[str, ...]
    paths: Tuple[str, ...]
    lock_files: Tuple[str, ...]
    estimated_saving: int

    def matches(self, command: str) -> bool:
        return any(re.search(p, command) for p in self.install_patterns)

    def cache_step(self) -> ActionStep:
        """An `actions/cache` step for this ecosystem."""
        hashed = ", ".join(f"'{f}'" for f in self.lock_files)
        return ActionStep(
            uses="actions/cache@v4",
            name=f"Cache {self.ecosystem} dependencies",
            with_={
                "path": "\n".join(self.paths),
                "key": "${{ runner.os }}-" + self.ecosystem + "-${{ hashFiles(" + hashed + ") }}",
                "restore-keys": "${{ runner.os }}-" + self.ecosystem + "-",
            },
        )


@dataclass(frozen=True)
class RunnerProfile:
    label: str
    cpu: int
    memory_gb: int
    cost_per_minute: float
    default: bool = False


CACHE_STRATEGIES: Tuple[CacheStrategy, ...] = (
    CacheStrategy(
        ecosystem="node",
        install_patterns=(r"\bnpm\s+(?:install|ci|i)\b", r"\byarn\s+install\b", r"\bpnpm\s+(?:install|i)\b"),
        paths=("~/.npm", "~/.yarn/cache", "node_modules"),
        lock_files=("**/package-lock.json", "**/yarn.lock", "**/pnpm-lock.yaml"),
        estimated_saving=180,
    ),
    CacheStrategy(
        ecosystem="python",
        install_patterns=(r"\bpip3?\s+install\b", r"\bpoetry\s+install\b", r"\bpipenv\s+install\b", r"\buv\s+(?:sync|pip\s+install)\b"),
        paths=("~/.cache/pip",),
        lock_files=("**/requirements*.txt", "**/poetry.lock", "**/Pipfile.lock"),
        estimated_saving=120,
    ),
    CacheStrategy(
        ecosystem="java",
        install_patterns=(r"\bmvnw?\b.*\b(?:install|package|verify|dependency:resolve)\b", r"\bgradlew?\b.*\b(?:build|assemble|dependencies)\b"),
        paths=("~/.m2/repository", "~/.gradle/caches"),
        lock_files=("**/pom.xml", "**/*.gradle*", "**/gradle-wrapper.properties"),
        estimated_saving=240,
    ),
    CacheStrategy(
        ecosystem="go",
        install_patterns=(r"\bgo\s+mod\s+download\b", r"\bgo\s+get\b"),
        paths=("~/go/pkg/mod", "~/.cache/go-build"),
        lock_files=("**/go.sum",),
        estimated_saving=90,
    ),
    CacheStrategy(
        ecosystem="rust",
        install_patterns=(r"\bcargo\s+(?:build|fetch|install)\b",),
        paths=("~/.cargo/registry", "~/.cargo/git", "target"),
        lock_files=("**/Cargo.lock",),
        estimated_saving=150,
    ),
    CacheStrategy(
        ecosystem="ruby",
        install_patterns=(r"\bbundle\s+install\b", r"\bgem\s+install\b"),
        paths=("vendor/bundle",),
        lock_files=("**/Gemfile.lock",),
        estimated_saving=90,
    ),
    CacheStrategy(
        ecosystem="dotnet",
        install_patterns=(r"\bdotnet\s+restore\b", r"\bnuget\s+restore\b"),
        paths=("~/.nuget/packages",),
        lock_files=("**/packages.lock.json", "**/*.csproj"),
        estimated_saving=120,
    ),
)

RUNNER_PROFILES: Tuple[RunnerProfile, ...] = (
    RunnerProfile("ubuntu-latest", cpu=2, memory_gb=7, cost_per_minute=0.008, default=True),
    RunnerProfile("ubuntu-22.04", cpu=2, memory_gb=7, cost_per_minute=0.008, default=True),
    RunnerProfile("ubuntu-24.04", cpu=2, memory_gb=7, cost_per_minute=0.008, default=True),
    RunnerProfile("windows-latest", cpu=2, memory_gb=7, cost_per_minute=0.016, default=True),
    RunnerProfile("macos-latest", cpu=3, memory_gb=14, cost_per_minute=0.08),
    RunnerProfile("ubuntu-latest-4-cores", cpu=4, memory_gb=16, cost_per_minute=0.016),
    RunnerProfile("ubuntu-latest-8-cores", cpu=8, memory_gb=32, cost_per_minute=0.032),
)

TRUSTED_ACTIONS: Tuple[str, ...] = ("actions/*", "github/*", "docker/*")

# (pattern over the step command or action name, seconds)
STEP_DURATIONS: Tuple[Tuple[str, int], ...] = (
    (r"\bdocker\s+(?:buildx\s+)?build\b", 360),
    (r"\b(?:mvnw?|gradlew?)\b", 300),
    (r"\b(?:npm|yarn|pnpm)\s+(?:run\s+)?test\b|\bpytest\b|\bgo\s+test\b|\bcargo\s+test\b", 240),
    (r"\b(?:npm|yarn|pnpm)\s+(?:run\s+)?build\b|\bmake\b|\bcargo\s+build\b", 180),
    (r"\b(?:npm|yarn|pnpm)\s+(?:install|ci|i)\b", 120),
    (r"\bdeploy\b|\bpublish\b|\brelease\b", 120),
    (r"\bpip3?\s+install\b|\bpoetry\s+install\b", 90),
)

ACTION_DURATIONS: Tuple[Tuple[str, int], ...] = (
    ("actions/checkout", 10),
    ("actions/cache*", 15),
    ("actions/setup-*", 30),
    ("*", 20),
)

# Untrusted event fields; matched against `${{ }}` expression bodies.
DANGEROUS_EXPRESSIONS: Tuple[str, ...] = (
    r"github\.event\.issue\.(?:title|body)",
    r"github\.event\.pull_request\.(?:title|body)",
    r"github\.event\.comment\.body",
    r"github\.event\.review\.body",
    r"github\.event\.review_comment\.body",
    r"github\.event\.discussion\.(?:title|body)",
    r"github\.event\.pages\.[^\s}]*\.page_name",
    r"github\.event\.commits\.[^\s}]*\.(?:message|author\.(?:email|name))",
    r"github\.event\.head_commit\.(?:message|author\.(?:email|name))",
    r"github\.event\.pull_request\.head\.(?:ref|label|repo\.default_branch)",
    r"github\.event\.workflow_run\.(?:head_branch|head_commit\.message|display_title)",
    r"github\.head_ref",
)


@dataclass(frozen=True)
class Registry:
    cache_strategies: Tuple[CacheStrategy, ...] = CACHE_STRATEGIES
    runner_profiles: Mapping[str, RunnerProfile] = field(
        default_factory=lambda: MappingProxyType({p.label: p for p in RUNNER_PROFILES})
    )
    trusted_actions: Tuple[str, ...] = TRUSTED_ACTIONS
    step_durations: Tuple[Tuple[str, int], ...] = STEP_DURATIONS
    action_durations: Tuple[Tuple[str, int], ...] = ACTION_DURATIONS
    dangerous_expressions: Tuple[str, ...] = DANGEROUS_EXPRESSIONS
    default_step_seconds: int = 60

    @classmethod
    def default(cls) -> "Registry":
        return cls()

    def with_trusted(self, patterns: Iterable[str]) -> "Registry":
        extra = tuple(p for p in patterns if p not in self.trusted_actions)
        if not extra:
            return self
        return replace(self, trusted_actions=self.trusted_actions + extra)

    # ------------------------------------------------------------------

    def runner_profile(self, runs_on: Any) -> Optional[RunnerProfile]:
        if not isinstance(runs_on, str):
            return None
        return self.runner_profiles.get(runs_on)

    def is_trusted(self, action_name: str) -> bool:
        return any(fnmatchcase(action_name, p) for p in self.trusted_actions)

    def is_default_runner(self, runs_on: Any) -> bool:
        profile = self.runner_profile(runs_on)
        return bool(profile and profile.default)

    def dangerous_in(self, expression: str) -> bool:
        return any(re.search(p, expression) for p in self.dangerous_expressions)

    def estimate_step_seconds(self, step: Step) -> int:
        if isinstance(step, RunStep):
            for pattern, seconds in self.step_durations:
                if re.search(pattern, step.run):
                    return seconds
            return self.default_step_seconds
        name = step.action_name
        for pattern, seconds in self.action_durations:
            if fnmatchcase(name, pattern):
                return seconds
        return self.default_step_seconds
