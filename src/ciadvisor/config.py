# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import PolicyError

ENV_PREFIX = "CIADVISOR_"


@dataclass(frozen=True)
class SeverityWeights:
    high: int = 20
    medium: int = 15
    low: int = 5


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the overall score. Each in [0.15, 0.20], summing to 1.0."""
    syntax: float = 0.20
    schema: float = 0.20
    actions: float = 0.15
    secrets: float = 0.15
    performance: float = 0.15
    security: float = 0.15

    def __post_init__(self) -> None:
        weights = self.as_dict()
        for name, w in weights.items():
            if not 0.15 <= w <= 0.20:
                raise ValueError(f"score weight '{name}' must be within [0.15, 0.20], got {w}")
        total = sum(weights.values())
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"score weights must total 1.0, got {total}")

    def as_dict(self) -> Dict[str, float]:
        return {
            "syntax": self.syntax,
            "schema": self.schema,
            "actions": self.actions,
            "secrets": self.secrets,
            "performance": self.performance,
            "security": self.security,
        }


def _default_deductions() -> Dict[str, int]:
    return {
        "caching": 15,
        "parallelization": 10,
        "matrix": 5,
        "resource": 5,
        "dependency": 10,
    }


@dataclass(frozen=True)
class EngineConfig:
    matrix_threshold: int = 20
    matrix_leg_seconds: int = 30
    runner_step_threshold: int = 10
    runner_saving_ratio: float = 0.25
    large_runner: str = "ubuntu-latest-4-cores"
    default_job_seconds: int = 300
    docker_cache_saving: int = 180
    slow_step_seconds: int = 300
    max_needs: int = 3
    dependency_wait_seconds: int = 180
    injection_penalty: int = 25
    untrusted_action_weight: int = 5
    untrusted_action_cap: int = 15
    severity_weights: SeverityWeights = field(default_factory=SeverityWeights)
    performance_deductions: Mapping[str, int] = field(default_factory=_default_deductions)
    score_weights: ScoreWeights = field(default_factory=ScoreWeights)
    max_workers: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Read `CIADVISOR_*` overrides; unset variables keep their defaults."""
        env = os.environ if environ is None else environ
        base = cls()
        workers = env.get(f"{ENV_PREFIX}MAX_WORKERS")
        return cls(
            matrix_threshold=int(env.get(f"{ENV_PREFIX}MATRIX_THRESHOLD", base.matrix_threshold)),
            matrix_leg_seconds=int(env.get(f"{ENV_PREFIX}MATRIX_LEG_SECONDS", base.matrix_leg_seconds)),
            runner_step_threshold=int(env.get(f"{ENV_PREFIX}RUNNER_STEP_THRESHOLD", base.runner_step_threshold)),
            large_runner=env.get(f"{ENV_PREFIX}LARGE_RUNNER", base.large_runner),
            default_job_seconds=int(env.get(f"{ENV_PREFIX}DEFAULT_JOB_SECONDS", base.default_job_seconds)),
            untrusted_action_cap=int(env.get(f"{ENV_PREFIX}UNTRUSTED_ACTION_CAP", base.untrusted_action_cap)),
            max_workers=int(workers) if workers else None,
        )

    @property
    def workers(self) -> int:
        if self.max_workers:
            return max(1, self.max_workers)
        return max(1, os.cpu_count() or 1)


class Policy(BaseModel):
    """
    Organisational policy handed to the engine with each request.

    `known_secrets=None` means "unknown": secret references are not checked.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    known_secrets: Optional[list[str]] = None
    trusted_actions: list[str] = Field(default_factory=list)
    required_pipeline_types: list[str] = Field(default_factory=list)
    forbidden_actions: list[str] = Field(default_factory=list)
    max_complexity: Optional[int] = Field(default=None, ge=1)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: str = "<policy>") -> "Policy":
        if not isinstance(data, Mapping):
            raise PolicyError(source=source, message="policy must be a mapping")
        normalised = {str(k).replace("-", "_"): v for k, v in data.items()}
        try:
            return cls(**normalised)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise PolicyError(source=source, message=details) from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Policy":
        p = Path(path)
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8"))
        except OSError as e:
            raise PolicyError(source=str(p), message=f"cannot read policy: {e}") from e
        except yaml.YAMLError as e:
            raise PolicyError(source=str(p), message=f"invalid YAML: {e}") from e
        return cls.from_mapping(data or {}, source=str(p))
