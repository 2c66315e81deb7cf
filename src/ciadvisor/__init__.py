from .config import EngineConfig, Policy, ScoreWeights
from .coordination import CoordinationPlan, PipelineRequest
from .engine import BatchResult, Engine, Report
from .errors import (
    AnalysisError,
    CycleError,
    DanglingReferenceError,
    InvalidPatchError,
    ParseError,
    PatchConflictError,
    PolicyError,
    UnknownRecommendationError,
    UnresolvedConflictError,
)
from .model import ActionStep, Job, PipelineDefinition, RunStep
from .parser import parse, serialize

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "Report",
    "BatchResult",
    "EngineConfig",
    "Policy",
    "ScoreWeights",
    "CoordinationPlan",
    "PipelineRequest",
    "PipelineDefinition",
    "Job",
    "ActionStep",
    "RunStep",
    "parse",
    "serialize",
    "AnalysisError",
    "ParseError",
    "DanglingReferenceError",
    "CycleError",
    "PatchConflictError",
    "InvalidPatchError",
    "UnknownRecommendationError",
    "UnresolvedConflictError",
    "PolicyError",
]
