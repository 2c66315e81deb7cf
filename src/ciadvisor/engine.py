# engine.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .cache import AnalysisCache, content_hash
from .collaborators import FileStore, LocalFileStore
from .config import EngineConfig, Policy
from .coordination import CoordinationPlan, PipelineRequest, apply_plan, plan_pipelines
from .dag import ExecutionPlan, build_graph, schedule
from .errors import CycleError, InvalidPatchError, ParseError, UnknownRecommendationError
from .findings import Finding, Kind, Severity
from .model import PipelineDefinition
from .parser import parse, serialize
from .patches import apply_patches
from .recommend import Recommendation, SubScore, merge, overall_score
from .registry import Registry
from .rules.performance import analyze_performance, performance_score
from .rules.security import analyze_security, security_score
from .rules.validity import check_validity

logger = logging.getLogger(__name__)

SUB_SCORES = ("syntax", "schema", "actions", "secrets", "performance", "security")


@dataclass(frozen=True)
class Report:
    """Result of analysing one pipeline text."""
    path: Optional[str]
    score: int
    sub_scores: Dict[str, SubScore]
    findings: Tuple[Finding, ...] = ()
    recommendations: Tuple[Recommendation, ...] = ()
    plan: Optional[ExecutionPlan] = None
    error: Optional[str] = None
    content_hash: str = ""

    def recommendation(self, rec_id: str) -> Optional[Recommendation]:
        for r in self.recommendations:
            if r.id == rec_id:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        plan = None
        if self.plan is not None:
            plan = {
                "waves": [list(w) for w in self.plan.waves],
                "unschedulable": list(self.plan.unschedulable),
            }
        return {
            "path": self.path,
            "score": self.score,
            "sub_scores": {k: v.to_dict() for k, v in self.sub_scores.items()},
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "plan": plan,
            "error": self.error,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of `Engine.analyze_batch`, keyed by path.

    `cached` holds report dicts served from an AnalysisCache; `skipped`
    lists paths never scheduled because the batch was cancelled.
    """
    reports: Dict[str, Report] = field(default_factory=dict)
    cached: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    skipped: Tuple[str, ...] = ()

    @property
    def scores(self) -> Dict[str, int]:
        out = {p: r["score"] for p, r in self.cached.items()}
        out.update({p: r.score for p, r in self.reports.items()})
        return dict(sorted(out.items()))

    def to_dict(self) -> Dict[str, Any]:
        reports = dict(self.cached)
        reports.update({p: r.to_dict() for p, r in self.reports.items()})
        return {
            "reports": dict(sorted(reports.items())),
            "failures": dict(sorted(self.failures.items())),
            "cancelled": self.cancelled,
            "skipped": list(self.skipped),
        }


def _finding_order(f: Finding) -> Tuple[int, str, str]:
    return (-f.severity.rank, f.rule, f.subject)


class Engine:
    """
    Library entry point.

    Registry and configuration are loaded once and never mutated, so one
    Engine can serve concurrent analyses.
    """

    def __init__(self, config: Optional[EngineConfig] = None, registry: Optional[Registry] = None):
        self.config = config or EngineConfig()
        self.registry = registry or Registry.default()

    # -----------------------------------------------------------------
    # Single pipeline
    # -----------------------------------------------------------------

    def analyze(self, text: str, policy: Optional[Policy] = None, *, path: Optional[str] = None) -> Report:
        """
        Analyse one pipeline text.

        A ParseError is not raised: it yields a report with score 0, syntax
        0 and every other sub-score skipped.
        """
        digest = content_hash(text)
        try:
            definition = parse(text, strict=False)
        except ParseError as e:
            logger.debug("parse failed for %s: %s", path or "<text>", e)
            sub_scores = {"syntax": SubScore(0)}
            for name in SUB_SCORES[1:]:
                sub_scores[name] = SubScore(0, skipped=True, reason="pipeline could not be parsed")
            return Report(path=path, score=0, sub_scores=sub_scores, error=str(e), content_hash=digest)
        return self._analyze_definition(definition, policy or Policy(), path=path, digest=digest)

    def _analyze_definition(
        self,
        definition: PipelineDefinition,
        policy: Policy,
        *,
        path: Optional[str] = None,
        digest: str = "",
    ) -> Report:
        findings: List[Finding] = []
        sub_scores: Dict[str, SubScore] = {"syntax": SubScore(100)}

        validity = check_validity(definition, policy=policy)
        sub_scores["schema"] = SubScore(validity.schema)
        sub_scores["actions"] = SubScore(validity.actions)
        sub_scores["secrets"] = SubScore(validity.secrets)
        findings.extend(validity.findings)

        plan: Optional[ExecutionPlan] = None
        try:
            graph = build_graph(definition)
        except CycleError as e:
            logger.debug("skipping performance rules: %s", e)
            sub_scores["performance"] = SubScore(0, skipped=True, reason=str(e))
            findings.append(
                Finding(
                    rule="dependency-cycle",
                    kind=Kind.DEPENDENCY,
                    severity=Severity.HIGH,
                    title="Break the job dependency cycle",
                    description=f"Jobs {', '.join(e.members)} depend on each other; none of them can start.",
                    subject=",".join(e.members),
                    details={"members": list(e.members)},
                )
            )
        else:
            plan = schedule(graph)
            perf = analyze_performance(
                definition,
                plan,
                graph=graph,
                registry=self.registry,
                policy=policy,
                config=self.config,
            )
            sub_scores["performance"] = SubScore(performance_score(perf, self.config))
            findings.extend(perf)

        sec = analyze_security(definition, registry=self.registry, policy=policy, config=self.config)
        sub_scores["security"] = SubScore(security_score(sec, self.config))
        findings.extend(sec)

        findings.sort(key=_finding_order)
        return Report(
            path=path,
            score=overall_score(sub_scores, self.config.score_weights),
            sub_scores=sub_scores,
            findings=tuple(findings),
            recommendations=merge(findings),
            plan=plan,
            content_hash=digest,
        )

    def apply(
        self,
        source: Union[str, PipelineDefinition],
        recommendation_ids: Iterable[str],
        policy: Optional[Policy] = None,
    ) -> str:
        """
        Apply the patches of the selected recommendations and return new text.

        Raises ParseError for unparseable text, UnknownRecommendationError
        for ids the analysis does not produce, InvalidPatchError for ids
        whose recommendation has no patches, and PatchConflictError /
        InvalidPatchError from the applicator. Nothing is applied on error.
        """
        if isinstance(source, PipelineDefinition):
            definition = source
        else:
            definition = parse(source, strict=False)
        report = self._analyze_definition(definition, policy or Policy())

        wanted = list(dict.fromkeys(recommendation_ids))
        unknown = [i for i in wanted if report.recommendation(i) is None]
        if unknown:
            raise UnknownRecommendationError(ids=tuple(unknown))

        manual = [i for i in wanted if not report.recommendation(i).applicable]
        if manual:
            raise InvalidPatchError("recommendation has no patches", target=", ".join(manual))

        patches = [p for i in wanted for p in report.recommendation(i).patches]
        return serialize(apply_patches(definition, patches))

    # -----------------------------------------------------------------
    # Multiple pipelines
    # -----------------------------------------------------------------

    def plan(
        self,
        requests: Iterable[Union[PipelineRequest, str]],
        policy: Optional[Policy] = None,
        *,
        file_store: Optional[FileStore] = None,
        output_dir: str = ".github/workflows",
    ) -> CoordinationPlan:
        policy = policy or Policy()
        return plan_pipelines(
            requests,
            policy=policy,
            file_store=file_store,
            analyze=lambda text: self.analyze(text, policy),
            output_dir=output_dir,
        )

    def apply_coordination(self, plan: CoordinationPlan, texts: Mapping[str, str]) -> Dict[str, str]:
        return apply_plan(plan, texts)

    def _analyze_file(
        self,
        path: str,
        file_store: FileStore,
        policy: Policy,
        cache: Optional[AnalysisCache],
    ) -> Tuple[str, Union[Report, Dict[str, Any]]]:
        text = file_store.read(path)
        digest = content_hash(text)
        if cache is not None:
            hit = cache.get(path, digest)
            if hit is not None:
                return "cached", hit
        report = self._analyze_definition(parse(text, strict=False), policy, path=path, digest=digest)
        if cache is not None:
            cache.put(path, digest, report.to_dict())
        return "analyzed", report

    def analyze_batch(
        self,
        paths: Sequence[str],
        *,
        file_store: Optional[FileStore] = None,
        policy: Optional[Policy] = None,
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        cache: Optional[AnalysisCache] = None,
    ) -> BatchResult:
        """
        Analyse independent files on a thread pool.

        Unreadable and unparseable files become `failures[path]`. Setting
        `cancel_event` stops scheduling; files already running complete and
        are reported.
        """
        store = file_store or LocalFileStore()
        policy = policy or Policy()
        workers = max_workers or self.config.workers

        pending: List[str] = sorted(dict.fromkeys(str(p) for p in paths))
        pending.reverse()
        reports: Dict[str, Report] = {}
        cached: Dict[str, Dict[str, Any]] = {}
        failures: Dict[str, str] = {}
        cancelled = False

        in_flight: Dict = {}

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while pending or in_flight:
                # schedule up to `workers` files, unless cancelled
                while pending and len(in_flight) < workers:
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break
                    path = pending.pop()
                    fut = pool.submit(self._analyze_file, path, store, policy, cache)
                    in_flight[fut] = path

                if not in_flight:
                    break

                fut = next(as_completed(list(in_flight.keys())))
                path = in_flight.pop(fut)

                try:
                    status, result = fut.result()
                except Exception as e:
                    # unreadable, undecodable or unparseable: record and carry on
                    failures[path] = str(e) or type(e).__name__
                    logger.debug("analysis of %s failed: %s", path, e, exc_info=True)
                    continue

                if status == "cached":
                    cached[path] = result
                else:
                    reports[path] = result
                logger.debug("analysed %s (%s)", path, status)

        skipped = tuple(reversed(pending)) if cancelled else ()
        if cancelled:
            logger.info("batch cancelled: %d file(s) completed, %d skipped",
                        len(reports) + len(cached) + len(failures), len(skipped))
        return BatchResult(
            reports=reports,
            cached=cached,
            failures=failures,
            cancelled=cancelled,
            skipped=skipped,
        )
