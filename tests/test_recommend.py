"""Tests for ciadvisor/recommend.py -- grouping, ranking and the overall score."""

from __future__ import annotations

import pytest

from ciadvisor.config import ScoreWeights
from ciadvisor.findings import Finding, Kind, Severity
from ciadvisor.model import ActionStep
from ciadvisor.patches import find_conflicts, insert_steps, set_field
from ciadvisor.recommend import SubScore, merge, overall_score


def _finding(rule="r", kind=Kind.CACHING, severity=Severity.MEDIUM, saving=0, patches=(), subject="", degraded=False):
    return Finding(
        rule=rule,
        kind=kind,
        severity=severity,
        title=f"{rule} {subject}".strip(),
        description=f"{rule} on {subject}",
        estimated_time_saving=saving,
        patches=tuple(patches),
        subject=subject,
        degraded=degraded,
    )


NODE = ActionStep(uses="actions/cache@v4", name="node")
PY = ActionStep(uses="actions/cache@v4", name="python")


class TestMerge:
    def test_findings_sharing_a_target_merge(self):
        a = _finding(rule="cache", saving=180, patches=[insert_steps("build", 1, NODE)], subject="build/node")
        b = _finding(rule="cache", saving=120, patches=[insert_steps("build", 1, PY)], subject="build/python")
        [rec] = merge([a, b])
        assert rec.id == "caching:jobs.build.steps[1]"
        assert rec.estimated_time_saving == 300
        assert len(rec.patches) == 1
        assert set(s.name for s in rec.patches[0].value) == {"node", "python"}
        assert rec.title.endswith("(+1 related)")

    def test_conflicting_findings_stay_apart(self):
        a = _finding(rule="cache", saving=180, subject="a",
                     patches=[insert_steps("img", 0, NODE), set_field("x --cache", job="img", step=0, field="run")])
        b = _finding(rule="inject", kind=Kind.SECURITY, severity=Severity.HIGH, subject="b",
                     patches=[set_field("x ${V}", job="img", step=0, field="run")])
        recs = merge([a, b])
        assert [r.id for r in recs] == ["security:jobs.img.steps[0].run", "caching:jobs.img.steps[0]"]
        assert all(find_conflicts(r.patches) == [] for r in recs)

    def test_priority_is_highest_severity(self):
        a = _finding(severity=Severity.LOW, patches=[set_field("x", job="a", field="runs-on")])
        b = _finding(rule="other", severity=Severity.HIGH, patches=[set_field("x", job="a", field="runs-on")])
        [rec] = merge([a, b])
        assert rec.priority is Severity.HIGH

    def test_ordering(self):
        recs = merge([
            _finding(rule="low", severity=Severity.LOW, saving=999, subject="1"),
            _finding(rule="b", severity=Severity.HIGH, saving=10, subject="2"),
            _finding(rule="a", severity=Severity.HIGH, saving=10, subject="3"),
            _finding(rule="big", severity=Severity.HIGH, saving=50, subject="4"),
        ])
        assert [r.id for r in recs] == [
            "caching:big:4",
            "caching:a:3",
            "caching:b:2",
            "caching:low:1",
        ]

    def test_duplicate_ids_get_suffixes(self):
        recs = merge([
            _finding(subject="x", severity=Severity.HIGH),
            _finding(subject="x", severity=Severity.LOW),
        ])
        assert [r.id for r in recs] == ["caching:r:x", "caching:r:x-2"]

    def test_ids_are_deterministic(self):
        fs = [
            _finding(rule="cache", patches=[insert_steps("a", 0, NODE)]),
            _finding(rule="perm", kind=Kind.SECURITY, severity=Severity.HIGH, patches=[set_field({}, field="permissions")]),
            _finding(rule="manual", kind=Kind.RESOURCE, subject="j"),
        ]
        assert merge(fs) == merge(list(reversed(fs)))

    def test_degraded_findings_are_excluded(self):
        assert merge([_finding(degraded=True)]) == ()

    def test_patchless_recommendation_is_not_applicable(self):
        [rec] = merge([_finding(subject="j")])
        assert not rec.applicable
        assert rec.to_dict()["rules"] == ["r"]


class TestOverallScore:
    def test_all_perfect(self):
        subs = {k: SubScore(100) for k in ScoreWeights().as_dict()}
        assert overall_score(subs) == 100

    def test_skipped_counts_as_zero(self):
        subs = {k: SubScore(100) for k in ScoreWeights().as_dict()}
        subs["performance"] = SubScore(0, skipped=True, reason="cycle")
        assert overall_score(subs) == 85

    def test_weighted_and_rounded(self):
        subs = {k: SubScore(100) for k in ScoreWeights().as_dict()}
        subs["performance"] = SubScore(85)
        assert overall_score(subs) == 98

    def test_missing_sub_scores(self):
        assert overall_score({}) == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"syntax": 0.25, "schema": 0.15},
        {"syntax": 0.10, "schema": 0.30},
        {"security": 0.20},
    ],
)
def test_invalid_weights(kwargs):
    with pytest.raises(ValueError):
        ScoreWeights(**kwargs)
