"""Tests for ciadvisor/patches.py -- conflicts, merging and atomic application."""

from __future__ import annotations

import pytest

from ciadvisor.errors import InvalidPatchError, PatchConflictError
from ciadvisor.model import ActionStep, RunStep
from ciadvisor.parser import parse, serialize
from ciadvisor.patches import (
    PatchOp,
    PatchPath,
    apply_patches,
    find_conflicts,
    insert_steps,
    merge_patches,
    remove_field,
    set_field,
)

from conftest import yaml_text

PIPELINE = yaml_text(
    """
    name: CI
    on: push
    jobs:
      lint:
        runs-on: ubuntu-latest
        steps:
          - run: make lint
      test:
        runs-on: ubuntu-latest
        needs: lint
        strategy:
          matrix:
            node: [16, 18, 20]
        steps:
          - uses: actions/checkout@v4
          - run: npm ci
    """
)

CACHE = ActionStep(uses="actions/cache@v4", name="Cache", with_={"path": "~/.npm", "key": "k"})


@pytest.fixture
def definition():
    return parse(PIPELINE)


class TestPatchPath:
    def test_targets(self):
        assert PatchPath(job="build", step=2).target == "jobs.build.steps[2]"
        assert PatchPath(job="build", step=1, field="run").target == "jobs.build.steps[1].run"
        assert PatchPath(job="build", field="needs").target == "jobs.build.needs"
        assert PatchPath(field="permissions").target == "permissions"
        assert PatchPath(field="on.workflow_run").target == "on.workflow_run"

    def test_overlap_is_prefix(self):
        a = PatchPath(job="t", field="strategy")
        b = PatchPath(job="t", field="strategy.matrix.node")
        c = PatchPath(job="t", field="env")
        assert a.overlaps(b) and b.overlaps(a)
        assert not a.overlaps(c)


class TestConflicts:
    def test_set_and_remove_same_field(self):
        pairs = find_conflicts([set_field(["lint"], job="test", field="needs"), remove_field(job="test", field="needs")])
        assert len(pairs) == 1

    def test_nested_paths_conflict(self):
        pairs = find_conflicts([
            set_field({}, job="test", field="strategy"),
            set_field([16, 20], job="test", field="strategy.matrix.node"),
        ])
        assert len(pairs) == 1

    def test_identical_patches_are_compatible(self):
        p = set_field("ubuntu-latest-4-cores", job="test", field="runs-on")
        assert find_conflicts([p, p]) == []

    def test_same_position_inserts_are_compatible(self):
        other = ActionStep(uses="actions/setup-node@v4")
        assert find_conflicts([insert_steps("test", 1, CACHE), insert_steps("test", 1, other)]) == []

    def test_merge_folds_inserts(self):
        other = ActionStep(uses="actions/setup-node@v4")
        merged = merge_patches([insert_steps("test", 1, CACHE), insert_steps("test", 1, other), insert_steps("test", 1, CACHE)])
        assert len(merged) == 1
        assert merged[0].op is PatchOp.INSERT_STEP
        assert len(merged[0].value) == 2
        assert CACHE in merged[0].value and other in merged[0].value

    def test_merge_is_order_independent(self):
        ps = [set_field("x", job="lint", field="runs-on"), insert_steps("test", 1, CACHE), remove_field(job="test", field="needs")]
        assert merge_patches(ps) == merge_patches(list(reversed(ps)))


class TestApply:
    def test_insert_before_step(self, definition):
        result = apply_patches(definition, [insert_steps("test", 1, CACHE)])
        steps = result.jobs["test"].steps
        assert [type(s) for s in steps] == [ActionStep, ActionStep, RunStep]
        assert steps[1].uses == "actions/cache@v4"

    def test_indices_refer_to_original_steps(self, definition):
        setup = ActionStep(uses="actions/setup-node@v4")
        result = apply_patches(definition, [insert_steps("test", 0, setup), insert_steps("test", 1, CACHE)])
        labels = [s.label for s in result.jobs["test"].steps]
        assert labels == ["actions/setup-node@v4", "actions/checkout@v4", "Cache", "npm ci"]

    def test_insert_is_idempotent(self, definition):
        patch = insert_steps("test", 1, CACHE)
        once = apply_patches(definition, [patch])
        twice = apply_patches(once, [patch])
        assert twice == once
        assert len(twice.jobs["test"].steps) == 3

    def test_set_and_remove_fields(self, definition):
        result = apply_patches(definition, [
            remove_field(job="test", field="needs"),
            set_field([16, 20], job="test", field="strategy.matrix.node"),
            set_field({"contents": "read"}, field="permissions"),
            set_field("${{ secrets.TOKEN }}", field="env.TOKEN"),
        ])
        assert result.jobs["test"].needs == ()
        assert result.jobs["test"].matrix == {"node": (16, 20)}
        assert result.permissions == {"contents": "read"}
        assert result.env == {"TOKEN": "${{ secrets.TOKEN }}"}

    def test_step_field(self, definition):
        result = apply_patches(definition, [set_field("npm ci --prefer-offline", job="test", step=1, field="run")])
        assert result.jobs["test"].steps[1].run == "npm ci --prefer-offline"

    def test_conflict_rejects_everything(self, definition):
        before = serialize(definition)
        with pytest.raises(PatchConflictError) as exc:
            apply_patches(definition, [
                insert_steps("test", 1, CACHE),
                set_field(["lint"], job="test", field="needs"),
                remove_field(job="test", field="needs"),
            ])
        assert len(exc.value.conflicts) == 1
        assert serialize(definition) == before

    def test_input_is_not_mutated(self, definition):
        snapshot = parse(PIPELINE)
        apply_patches(definition, [insert_steps("test", 1, CACHE), set_field([16], job="test", field="strategy.matrix.node")])
        assert definition == snapshot

    def test_unknown_job(self, definition):
        with pytest.raises(InvalidPatchError, match="unknown job 'ghost'"):
            apply_patches(definition, [set_field("x", job="ghost", field="runs-on")])

    def test_step_out_of_range(self, definition):
        with pytest.raises(InvalidPatchError):
            apply_patches(definition, [insert_steps("test", 7, CACHE)])

    def test_dangling_needs_rejected(self, definition):
        with pytest.raises(InvalidPatchError, match="patched pipeline is invalid"):
            apply_patches(definition, [set_field(["ghost"], job="test", field="needs")])

    def test_cycle_rejected(self, definition):
        with pytest.raises(InvalidPatchError, match="dependency cycle"):
            apply_patches(definition, [set_field(["test"], job="lint", field="needs")])

    def test_field_patch_needs_a_field(self, definition):
        with pytest.raises(InvalidPatchError):
            apply_patches(definition, [set_field("x", job="test", field="")])


def test_to_dict():
    p = set_field(["a"], job="b", field="needs")
    assert p.to_dict() == {"op": "set-field", "target": "jobs.b.needs", "value": ["a"]}
    assert "value" not in remove_field(job="b", field="needs").to_dict()
