"""Tests for ciadvisor/dag.py -- dependency graph and wave scheduling."""

from __future__ import annotations

import random

import pytest

from ciadvisor.dag import build_edge_graph, build_graph, critical_path, schedule
from ciadvisor.errors import CycleError
from ciadvisor.parser import parse

from conftest import yaml_text


def _pipeline(needs):
    lines = ["jobs:"]
    for name, deps in needs.items():
        lines += [f"  {name}:", "    runs-on: ubuntu-latest"]
        if deps:
            lines.append(f"    needs: [{', '.join(deps)}]")
    return "\n".join(lines) + "\n"


class TestSchedule:
    def test_diamond(self):
        d = parse(_pipeline({"d": ["b", "c"], "b": ["a"], "c": ["a"], "a": []}))
        plan = schedule(build_graph(d))
        assert plan.waves == (("a",), ("b", "c"), ("d",))
        assert plan.order == ("a", "b", "c", "d")
        assert plan.wave_of("d") == 2
        assert plan.parallelizable == ("a", "b", "c")

    def test_independent_jobs_share_wave_zero(self):
        plan = schedule(build_graph(parse(_pipeline({"z": [], "m": [], "a": []}))))
        assert plan.waves == (("a", "m", "z"),)

    def test_empty_pipeline(self):
        plan = schedule(build_graph(parse("")))
        assert plan.waves == ()
        assert plan.order == ()

    def test_dependents(self):
        g = build_graph(parse(_pipeline({"a": [], "b": ["a"], "c": ["a"]})))
        assert g.dependents("a") == ("b", "c")
        assert g.dependencies("b") == ("a",)


class TestCycles:
    def test_cycle_members_exact(self):
        text = _pipeline({"a": ["c"], "b": ["a"], "c": ["b"], "x": [], "y": ["x"]})
        with pytest.raises(CycleError) as exc:
            build_graph(parse(text))
        assert exc.value.members == ("a", "c", "b")
        assert "x" not in exc.value.members

    def test_self_loop(self):
        with pytest.raises(CycleError) as exc:
            build_graph(parse(_pipeline({"a": ["a"]})))
        assert exc.value.members == ("a",)

    def test_long_chain_does_not_recurse(self):
        names = [f"j{i:05d}" for i in range(5000)]
        edges = {n: [names[i + 1]] for i, n in enumerate(names[:-1])}
        g = build_edge_graph(names, edges)
        assert len(schedule(g).waves) == 5000

        edges[names[-1]] = [names[0]]
        with pytest.raises(CycleError) as exc:
            build_edge_graph(names, edges)
        assert exc.value.members == tuple(names)

    def test_cycle_str(self):
        assert str(CycleError(members=("a", "b"))) == "dependency cycle: a -> b -> a"


class TestDangling:
    def test_dependents_of_dangling_job_are_unschedulable(self):
        text = yaml_text(
            """
            jobs:
              a:
                runs-on: ubuntu-latest
              b:
                runs-on: ubuntu-latest
                needs: [ghost]
              c:
                runs-on: ubuntu-latest
                needs: [b]
            """
        )
        g = build_graph(parse(text, strict=False))
        assert g.dangling == {"b": ("ghost",)}
        assert g.unschedulable == ("b", "c")
        plan = schedule(g)
        assert plan.waves == (("a",),)
        assert plan.unschedulable == ("b", "c")

    def test_without_edges_keeps_dangling(self):
        g = build_edge_graph(["a", "b", "c"], {"b": ["a", "ghost"], "c": ["a"]})
        reduced = g.without_edges({"c": ["a"]})
        assert reduced.dependencies("c") == ()
        assert reduced.dangling == {"b": ("ghost",)}


def test_critical_path():
    g = build_edge_graph(["a", "b", "c", "d"], {"b": ["a"], "c": ["a"], "d": ["b", "c"]})
    chain, total = critical_path(g, {"a": 10, "b": 50, "c": 20, "d": 5})
    assert chain == ("a", "b", "d")
    assert total == 65


def test_critical_path_empty():
    assert critical_path(build_edge_graph([], {}), {}) == ((), 0)


@pytest.mark.parametrize("seed", range(20))
def test_wave_completeness_on_random_dags(seed):
    rng = random.Random(seed)
    names = [f"j{i}" for i in range(rng.randint(1, 15))]
    needs = {
        n: rng.sample(names[:i], rng.randint(0, min(i, 3)))
        for i, n in enumerate(names)
    }
    plan = schedule(build_edge_graph(names, needs))

    seen = [n for wave in plan.waves for n in wave]
    assert sorted(seen) == sorted(names)
    assert len(seen) == len(set(seen))
    for n, deps in needs.items():
        for dep in deps:
            assert plan.wave_of(dep) < plan.wave_of(n)
