"""Tests for ciadvisor/coordination.py -- multi-pipeline planning."""

from __future__ import annotations

import pytest

from ciadvisor.config import Policy
from ciadvisor.coordination import (
    INFERENCE_RULES,
    ConflictType,
    PipelineRequest,
    apply_plan,
    plan_pipelines,
    resolve,
    role_rank,
)
from ciadvisor.errors import UnresolvedConflictError
from ciadvisor.parser import parse

from conftest import MemoryFileStore, yaml_text

CI = yaml_text(
    """
    name: CI
    on: push
    env:
      REGISTRY_TOKEN: ${{ secrets.NPM_TOKEN }}
    jobs:
      build:
        runs-on: ubuntu-latest
        steps:
          - uses: actions/checkout@v4
          - run: npm ci
    """
)

CD = yaml_text(
    """
    name: CD
    on: push
    concurrency: deploy
    jobs:
      deploy:
        runs-on: ubuntu-latest
        steps:
          - run: npm install
          - run: npm publish
            env:
              NODE_AUTH_TOKEN: ${{ secrets.NPM_TOKEN }}
    """
)


def test_inference_rules_respect_role_order():
    for upstream, downstream, _unless in INFERENCE_RULES:
        assert role_rank(upstream) < role_rank(downstream)


class TestPlan:
    def test_ci_before_cd(self):
        plan = plan_pipelines(["ci", "cd"])
        assert plan.execution_order == ("ci", "cd")
        assert plan.conflicts == ()
        assert plan.resolved
        assert [(e.upstream, e.downstream) for e in plan.edges] == [("ci", "cd")]
        assert plan.pipeline("cd").output_path == ".github/workflows/cd.yml"
        assert plan.pipeline("ci").display_name == "Continuous Integration"

    def test_order_ignores_request_order(self):
        assert plan_pipelines(["release", "cd", "ci"]).execution_order == ("ci", "cd", "release")

    def test_release_follows_ci_without_cd(self):
        plan = plan_pipelines(["release", "ci", "security"])
        assert [(e.upstream, e.downstream) for e in plan.edges] == [("ci", "release"), ("ci", "security")]
        assert plan.waves == (("ci",), ("release", "security"))

    def test_repeated_roles_get_suffixes(self):
        plan = plan_pipelines([PipelineRequest("ci", name="A"), PipelineRequest("ci", name="B")])
        assert sorted(p.id for p in plan.pipelines) == ["ci", "ci-2"]

    def test_empty_type_is_rejected(self):
        with pytest.raises(ValueError):
            plan_pipelines([" "])

    def test_required_types_warn(self):
        plan = plan_pipelines(["ci"], policy=Policy(required_pipeline_types=["ci", "security"]))
        assert plan.warnings == ("required pipeline type 'security' is not part of the plan",)


class TestConflicts:
    @pytest.mark.parametrize("order", [("ci", "cd"), ("cd", "ci")])
    def test_same_output_path_gives_one_file_conflict(self, order):
        requests = [PipelineRequest(t, output_path="workflows/main.yml") for t in order]
        plan = plan_pipelines(requests)
        file_conflicts = [c for c in plan.conflicts if c.type is ConflictType.FILE]
        assert len(file_conflicts) == 1
        assert file_conflicts[0].affected == ("cd", "ci")
        assert plan.resolved
        assert {p.output_path for p in plan.pipelines} == {"workflows/main.yml", "workflows/main-ci.yml"}

    def test_conflicts_do_not_depend_on_request_order(self):
        a = plan_pipelines([PipelineRequest("ci", output_path="x.yml"), PipelineRequest("cd", output_path="./x.yml")])
        b = plan_pipelines([PipelineRequest("cd", output_path="x.yml"), PipelineRequest("ci", output_path="x.yml")])
        assert a.to_dict()["conflicts"] == b.to_dict()["conflicts"]

    def test_naming_conflict_is_renamed(self):
        plan = plan_pipelines([PipelineRequest("ci", name="Build"), PipelineRequest("cd", name="build")])
        [c] = plan.conflicts
        assert c.type is ConflictType.NAMING
        assert c.applied == "rename"
        assert {p.display_name for p in plan.pipelines} == {"build", "Build (ci)"}

    def test_shared_concurrency_group(self):
        plan = plan_pipelines([PipelineRequest("cd", text=CD), PipelineRequest("release", text=CD.replace("name: CD", "name: Rel"))])
        [c] = [c for c in plan.conflicts if c.type is ConflictType.RESOURCE]
        assert c.affected == ("cd", "release")
        assert plan.resolved
        targets = [p.target for p in plan.patches["release"]]
        assert "concurrency" in targets

    def test_workflow_scoped_group_is_not_a_conflict(self):
        text = CD.replace("concurrency: deploy", "concurrency: ${{ github.workflow }}-${{ github.ref }}")
        plan = plan_pipelines([PipelineRequest("cd", text=text), PipelineRequest("release", text=text.replace("name: CD", "name: Rel"))])
        assert [c for c in plan.conflicts if c.type is ConflictType.RESOURCE] == []

    def test_existing_file_needs_a_decision(self):
        store = MemoryFileStore({".github/workflows/ci.yml": "name: old\n"})
        plan = plan_pipelines(["ci", "cd"], file_store=store)
        assert not plan.resolved
        [c] = plan.unresolved
        assert c.id == "file:existing:.github/workflows/ci.yml"
        assert {r.action for r in c.resolutions} == {"overwrite", "keep"}
        assert not any(r.automatic for r in c.resolutions)

        with pytest.raises(UnresolvedConflictError):
            apply_plan(plan, {})

        overwritten = resolve(plan, {c.id: "overwrite"}, file_store=store)
        assert overwritten.resolved
        assert [p.id for p in overwritten.pipelines] == ["ci", "cd"]

        kept = resolve(plan, {c.id: "keep"}, file_store=store)
        assert kept.resolved
        assert [p.id for p in kept.pipelines] == ["cd"]

    def test_unknown_resolution_is_rejected(self):
        store = MemoryFileStore({".github/workflows/ci.yml": ""})
        plan = plan_pipelines(["ci"], file_store=store)
        with pytest.raises(ValueError):
            resolve(plan, {plan.unresolved[0].id: "rename"}, file_store=store)


class TestSharedResources:
    def test_variables_shared_by_every_pipeline(self):
        requests = [
            PipelineRequest("ci", project_name="shop", ecosystems=("npm",)),
            PipelineRequest("cd", project_name="shop", ecosystems=("npm", "docker")),
        ]
        plan = plan_pipelines(requests)
        assert plan.shared_variables == {"PROJECT_NAME": "shop"}
        assert plan.shared_secrets == ("NPM_TOKEN",)
        assert "DOCKER_PASSWORD" in plan.pipeline("cd").secrets

    def test_single_pipeline_shares_nothing(self):
        plan = plan_pipelines([PipelineRequest("ci", project_name="shop")])
        assert plan.shared_variables == {}

    def test_patches_and_application(self):
        plan = plan_pipelines([PipelineRequest("ci", text=CI), PipelineRequest("cd", text=CD)])
        assert plan.resolved
        assert plan.shared_secrets == ("NPM_TOKEN",)
        cd_targets = [p.target for p in plan.patches["cd"]]
        assert "env.NPM_TOKEN" in cd_targets
        assert "on.workflow_run" in cd_targets

        out = apply_plan(plan, {"ci": CI, "cd": CD})
        cd = parse(out["cd"])
        assert "workflow_run" in cd.trigger_events
        assert dict((t.event, t.config) for t in cd.triggers)["workflow_run"] == {
            "workflows": ["CI"],
            "types": ["completed"],
        }
        assert cd.env["NPM_TOKEN"] == "${{ secrets.NPM_TOKEN }}"
        assert "workflow_run" not in parse(out["ci"]).trigger_events

    def test_cross_pipeline_cache(self, engine):
        plan = engine.plan([PipelineRequest("ci", text=CI), PipelineRequest("cd", text=CD)])
        [f] = plan.cross_pipeline
        assert f.details["ecosystem"] == "node"
        assert f.estimated_time_saving == 90
        assert plan.pipeline("ci").report is not None
