"""Tests for ciadvisor/parser.py -- text <-> model."""

from __future__ import annotations

import pytest

from ciadvisor.errors import DanglingReferenceError, ParseError
from ciadvisor.model import ActionStep, PipelineDefinition, RunStep
from ciadvisor.parser import parse, referenced_secrets, serialize

from conftest import yaml_text

FULL_PIPELINE = yaml_text(
    """
    name: Full
    on:
      push:
        branches: [main]
      pull_request:
    permissions:
      contents: read
    env:
      GLOBAL: "1"
    concurrency: ci-${{ github.ref }}
    jobs:
      test:
        name: Unit tests
        runs-on: ${{ matrix.os }}
        timeout-minutes: 15
        strategy:
          fail-fast: false
          matrix:
            os: [ubuntu-latest, windows-latest]
            node: [18, 20]
            include:
              - os: ubuntu-latest
                node: 22
        env:
          CI: "true"
        steps:
          - uses: actions/checkout@v4
          - name: Setup
            id: setup
            uses: actions/setup-node@v4
            with:
              node-version: ${{ matrix.node }}
          - name: Test
            if: success()
            run: |
              npm ci
              npm test
            shell: bash
      report:
        runs-on: ubuntu-latest
        needs: [test]
        steps:
          - run: echo ${{ secrets.REPORT_TOKEN }}
    """
)


# --- parse ---


class TestParse:
    def test_full_pipeline_shape(self):
        d = parse(FULL_PIPELINE)
        assert d.name == "Full"
        assert d.trigger_events == ("push", "pull_request")
        assert d.triggers[0].config == {"branches": ["main"]}
        assert d.extras["concurrency"] == "ci-${{ github.ref }}"
        assert list(d.jobs) == ["test", "report"]

        test = d.jobs["test"]
        assert test.matrix == {"os": ("ubuntu-latest", "windows-latest"), "node": (18, 20)}
        assert test.matrix_extras == {"include": [{"os": "ubuntu-latest", "node": 22}]}
        assert test.strategy == {"fail-fast": False}
        assert test.matrix_size == 4
        assert test.extras["timeout-minutes"] == 15

        checkout, setup, run = test.steps
        assert isinstance(checkout, ActionStep)
        assert checkout.reference.name == "actions/checkout"
        assert checkout.reference.version == "v4"
        assert setup.extras == {"id": "setup"}
        assert isinstance(run, RunStep)
        assert run.shell == "bash"
        assert run.condition == "success()"
        assert d.jobs["report"].needs == ("test",)

    def test_on_keyword_is_not_a_boolean(self):
        d = parse("on: push\njobs: {}\n")
        assert d.trigger_events == ("push",)
        assert True not in d.extras

    def test_on_list_form(self):
        d = parse("on: [push, pull_request, push]\n")
        assert d.trigger_events == ("push", "pull_request")

    @pytest.mark.parametrize("text", ["", "   \n", "# only a comment\n"])
    def test_empty_text_is_empty_pipeline(self, text):
        d = parse(text)
        assert d == PipelineDefinition()
        assert d.is_empty

    def test_syntax_error_has_line(self):
        with pytest.raises(ParseError) as exc:
            parse("name: x\njobs:\n  build: [\n")
        assert exc.value.line >= 3

    def test_duplicate_job_name_reports_second_line(self):
        text = yaml_text(
            """
            jobs:
              build:
                runs-on: ubuntu-latest
              build:
                runs-on: ubuntu-22.04
            """
        )
        with pytest.raises(ParseError) as exc:
            parse(text)
        assert exc.value.line == 4
        assert "duplicate key 'build'" in str(exc.value)

    def test_step_with_uses_and_run_is_rejected(self):
        text = yaml_text(
            """
            jobs:
              build:
                runs-on: ubuntu-latest
                steps:
                  - uses: actions/checkout@v4
                    run: echo hi
            """
        )
        with pytest.raises(ParseError, match="exactly one of 'uses' or 'run'"):
            parse(text)

    def test_step_with_neither_is_rejected(self):
        text = "jobs:\n  build:\n    runs-on: x\n    steps:\n      - name: nothing\n"
        with pytest.raises(ParseError):
            parse(text)

    def test_jobs_must_be_a_mapping(self):
        with pytest.raises(ParseError, match="'jobs' must be a mapping"):
            parse("jobs: [a, b]\n")

    def test_steps_must_be_a_list(self):
        with pytest.raises(ParseError, match="'steps' must be a list"):
            parse("jobs:\n  a:\n    runs-on: x\n    steps: echo\n")


class TestDanglingNeeds:
    TEXT = yaml_text(
        """
        jobs:
          build:
            runs-on: ubuntu-latest
          test:
            runs-on: ubuntu-latest
            needs: [build, lint]
        """
    )

    def test_strict_raises(self):
        with pytest.raises(DanglingReferenceError) as exc:
            parse(self.TEXT)
        assert exc.value.job == "test"
        assert exc.value.missing == ("lint",)
        assert exc.value.line == 4
        assert isinstance(exc.value, ParseError)

    def test_lenient_keeps_reference(self):
        d = parse(self.TEXT, strict=False)
        assert d.jobs["test"].needs == ("build", "lint")


# --- serialize ---


class TestSerialize:
    def test_round_trip(self):
        once = parse(FULL_PIPELINE)
        assert parse(serialize(once)) == once

    def test_round_trip_is_stable(self):
        text = serialize(parse(FULL_PIPELINE))
        assert serialize(parse(text)) == text

    def test_key_order(self):
        text = serialize(parse(FULL_PIPELINE))
        top = [line.split(":")[0] for line in text.splitlines() if line and not line.startswith(" ")]
        # PyYAML quotes `on` because YAML 1.1 would read it as a boolean
        assert [k.strip("'") for k in top] == ["name", "on", "permissions", "env", "concurrency", "jobs"]

    def test_multiline_run_uses_literal_block(self):
        text = serialize(parse(FULL_PIPELINE))
        assert "run: |" in text

    def test_empty_pipeline_serializes_to_nothing(self):
        assert serialize(PipelineDefinition()) == ""


def test_referenced_secrets_sorted_and_unique():
    text = yaml_text(
        """
        env:
          A: ${{ secrets.ZED }}
        jobs:
          x:
            runs-on: ubuntu-latest
            steps:
              - run: echo ${{ secrets.ALPHA }} ${{ secrets.ZED }}
        """
    )
    assert referenced_secrets(parse(text)) == ("ALPHA", "ZED")
