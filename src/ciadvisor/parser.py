# parser.py
"""
Pipeline text <-> PipelineDefinition.

Parsing goes through PyYAML's composer so that line numbers are available
for duplicate keys and dangling `needs`; the constructed document is then
normalised into the typed model in `model.py`.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import yaml

from .errors import DanglingReferenceError, ParseError
from .model import ActionStep, Job, PipelineDefinition, RunStep, Step, Trigger

EXPRESSION_RE = re.compile(r"\$\{\{(.*?)\}\}", re.S)
SECRET_NAME_RE = re.compile(r"\bsecrets\.([A-Za-z_][A-Za-z0-9_]*)")

_PIPELINE_KEYS = ("name", "on", "permissions", "env", "jobs")
_JOB_KEYS = ("runs-on", "steps", "needs", "strategy", "permissions", "env", "if")
_STEP_KEYS = ("uses", "run", "name", "if", "with", "env")


# ---------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------

def _check_duplicate_keys(node: yaml.Node, seen_nodes: Optional[Set[int]] = None) -> None:
    if seen_nodes is None:
        seen_nodes = set()
    if id(node) in seen_nodes:
        return
    seen_nodes.add(id(node))

    if isinstance(node, yaml.MappingNode):
        keys: Dict[Any, yaml.Node] = {}
        for key_node, value_node in node.value:
            if isinstance(key_node, yaml.ScalarNode) and key_node.value != "<<":
                if key_node.value in keys:
                    raise ParseError(
                        line=key_node.start_mark.line + 1,
                        message=f"duplicate key '{key_node.value}'",
                    )
                keys[key_node.value] = key_node
            _check_duplicate_keys(value_node, seen_nodes)
    elif isinstance(node, yaml.SequenceNode):
        for item in node.value:
            _check_duplicate_keys(item, seen_nodes)


def _load(text: str) -> Tuple[Any, Optional[yaml.Node]]:
    loader = yaml.SafeLoader(text)
    try:
        node = loader.get_single_node()
        if node is None:
            return None, None
        _check_duplicate_keys(node)
        return loader.construct_document(node), node
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        line = mark.line + 1 if mark is not None else 0
        raise ParseError(line=line, message=e.problem or e.context or "invalid YAML") from e
    except yaml.YAMLError as e:
        raise ParseError(line=0, message=str(e)) from e
    finally:
        loader.dispose()


def _key_lines(node: Optional[yaml.Node], *path: str) -> Dict[str, int]:
    """Line (1-based) of every key in the mapping found at `path`."""
    current = node
    for part in path:
        if not isinstance(current, yaml.MappingNode):
            return {}
        nxt = None
        for key_node, value_node in current.value:
            if isinstance(key_node, yaml.ScalarNode) and key_node.value == part:
                nxt = value_node
                break
        current = nxt
    if not isinstance(current, yaml.MappingNode):
        return {}
    return {
        str(k.value): k.start_mark.line + 1
        for k, _v in current.value
        if isinstance(k, yaml.ScalarNode)
    }


# ---------------------------------------------------------------------
# dict -> model
# ---------------------------------------------------------------------

def _mapping(value: Any, what: str, line: int = 0) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(line=line, message=f"{what} must be a mapping, got {type(value).__name__}")
    return {str(k): v for k, v in value.items()}


def _triggers(value: Any, line: int = 0) -> Tuple[Trigger, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (Trigger(event=value),)
    if isinstance(value, list):
        out: List[Trigger] = []
        for item in value:
            if not isinstance(item, str):
                raise ParseError(line=line, message=f"trigger names must be strings, got {item!r}")
            if item not in [t.event for t in out]:
                out.append(Trigger(event=item))
        return tuple(out)
    if isinstance(value, dict):
        return tuple(Trigger(event=str(k), config=v) for k, v in value.items())
    raise ParseError(line=line, message="'on' must be a string, a list or a mapping")


def step_from_mapping(raw: Any, *, job: str = "", index: int = 0, line: int = 0) -> Step:
    where = f"job '{job}' step {index}"
    if not isinstance(raw, dict):
        raise ParseError(line=line, message=f"{where} must be a mapping")
    raw = {str(k): v for k, v in raw.items()}

    has_uses = "uses" in raw
    has_run = "run" in raw
    if has_uses == has_run:
        raise ParseError(line=line, message=f"{where} must have exactly one of 'uses' or 'run'")

    name = raw.get("name")
    condition = raw.get("if")
    env = _mapping(raw.get("env"), f"{where} env", line)
    extras = {k: v for k, v in raw.items() if k not in _STEP_KEYS}

    if has_uses:
        uses = raw["uses"]
        if not isinstance(uses, str) or not uses.strip():
            raise ParseError(line=line, message=f"{where}: 'uses' must be a non-empty string")
        return ActionStep(
            uses=uses,
            name=None if name is None else str(name),
            condition=None if condition is None else str(condition),
            with_=_mapping(raw.get("with"), f"{where} with", line),
            env=env,
            extras=extras,
        )

    run = raw["run"]
    if isinstance(run, (dict, list)) or run is None:
        raise ParseError(line=line, message=f"{where}: 'run' must be a string")
    return RunStep(
        run=str(run),
        name=None if name is None else str(name),
        condition=None if condition is None else str(condition),
        env=env,
        extras=extras,
    )


def _needs(value: Any, job: str, line: int) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        out: List[str] = []
        for v in value:
            if v not in out:
                out.append(v)
        return tuple(out)
    raise ParseError(line=line, message=f"job '{job}': 'needs' must be a string or a list of strings")


def job_from_mapping(name: str, raw: Any, *, line: int = 0) -> Job:
    if not isinstance(raw, dict):
        raise ParseError(line=line, message=f"job '{name}' must be a mapping")
    raw = {str(k): v for k, v in raw.items()}

    steps_raw = raw.get("steps")
    if steps_raw is None:
        steps_raw = []
    if not isinstance(steps_raw, list):
        raise ParseError(line=line, message=f"job '{name}': 'steps' must be a list")
    steps = tuple(step_from_mapping(s, job=name, index=i, line=line) for i, s in enumerate(steps_raw))

    strategy = _mapping(raw.get("strategy"), f"job '{name}' strategy", line)
    matrix: Dict[str, Tuple[Any, ...]] = {}
    matrix_extras: Dict[str, Any] = {}
    if isinstance(strategy.get("matrix"), dict):
        for axis, values in strategy.pop("matrix").items():
            axis = str(axis)
            if isinstance(values, list) and axis not in ("include", "exclude"):
                matrix[axis] = tuple(values)
            else:
                matrix_extras[axis] = values

    condition = raw.get("if")
    return Job(
        name=name,
        runs_on=raw.get("runs-on"),
        steps=steps,
        needs=_needs(raw.get("needs"), name, line),
        matrix=matrix,
        matrix_extras=matrix_extras,
        strategy=strategy,
        permissions=raw.get("permissions"),
        env=_mapping(raw.get("env"), f"job '{name}' env", line),
        condition=None if condition is None else str(condition),
        extras={k: v for k, v in raw.items() if k not in _JOB_KEYS},
    )


def definition_from_dict(
    data: Mapping[str, Any],
    *,
    strict: bool = True,
    lines: Optional[Mapping[str, int]] = None,
) -> PipelineDefinition:
    """
    Build a PipelineDefinition from a plain mapping.

    `lines` maps job names to source lines and is only used for error messages.
    """
    lines = lines or {}
    if not isinstance(data, Mapping):
        raise ParseError(line=1, message="pipeline definition must be a mapping")

    data = dict(data)
    # YAML 1.1 reads a bare `on` key as boolean true
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    jobs_raw = data.get("jobs")
    if jobs_raw is None:
        jobs_raw = {}
    if not isinstance(jobs_raw, dict):
        raise ParseError(line=lines.get("jobs", 0), message="'jobs' must be a mapping")

    jobs: Dict[str, Job] = {}
    for job_name, raw in jobs_raw.items():
        if not isinstance(job_name, str):
            raise ParseError(line=0, message=f"job names must be strings, got {job_name!r}")
        jobs[job_name] = job_from_mapping(job_name, raw, line=lines.get(job_name, 0))

    if strict:
        for job_name, job in jobs.items():
            missing = tuple(n for n in job.needs if n not in jobs)
            if missing:
                raise DanglingReferenceError(
                    line=lines.get(job_name, 0),
                    message=f"job '{job_name}' needs unknown job(s): {', '.join(missing)}",
                    job=job_name,
                    missing=missing,
                )

    name = data.get("name")
    return PipelineDefinition(
        name=None if name is None else str(name),
        triggers=_triggers(data.get("on")),
        permissions=data.get("permissions"),
        env=_mapping(data.get("env"), "pipeline env"),
        jobs=jobs,
        extras={str(k): v for k, v in data.items() if k not in _PIPELINE_KEYS},
    )


def parse(text: str, *, strict: bool = True) -> PipelineDefinition:
    """
    Parse pipeline text.

    Empty text is the empty pipeline. Raises ParseError (with a 1-based
    line where one is known) for malformed input; with strict=False a
    `needs` entry naming a missing job is kept instead of rejected.
    """
    if not text or not text.strip():
        return PipelineDefinition()

    data, node = _load(text)
    if data is None:
        return PipelineDefinition()
    if not isinstance(data, dict):
        raise ParseError(line=1, message="pipeline definition must be a mapping")

    lines = _key_lines(node, "jobs")
    top = _key_lines(node)
    if "jobs" in top:
        lines.setdefault("jobs", top["jobs"])
    return definition_from_dict(data, strict=strict, lines=lines)


# ---------------------------------------------------------------------
# model -> dict -> text
# ---------------------------------------------------------------------

def to_plain(value: Any) -> Any:
    """Deep copy into YAML-safe builtins (tuples become lists)."""
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def step_to_dict(step: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if step.name is not None:
        out["name"] = step.name
    if "id" in step.extras:
        out["id"] = to_plain(step.extras["id"])
    if step.condition is not None:
        out["if"] = step.condition
    if isinstance(step, ActionStep):
        out["uses"] = step.uses
        if step.with_:
            out["with"] = to_plain(step.with_)
    else:
        out["run"] = step.run
    if step.env:
        out["env"] = to_plain(step.env)
    for k, v in step.extras.items():
        if k != "id":
            out[k] = to_plain(v)
    return out


def job_to_dict(job: Job) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if "name" in job.extras:
        out["name"] = to_plain(job.extras["name"])
    if job.runs_on is not None:
        out["runs-on"] = to_plain(job.runs_on)
    if job.needs:
        out["needs"] = list(job.needs)
    if job.condition is not None:
        out["if"] = job.condition
    if job.permissions is not None:
        out["permissions"] = to_plain(job.permissions)

    strategy = to_plain(job.strategy)
    if job.matrix or job.matrix_extras:
        matrix = {axis: list(values) for axis, values in job.matrix.items()}
        matrix.update(to_plain(job.matrix_extras))
        strategy = {"matrix": to_plain(matrix), **strategy}
    if strategy:
        out["strategy"] = strategy

    if job.env:
        out["env"] = to_plain(job.env)
    for k, v in job.extras.items():
        if k != "name":
            out[k] = to_plain(v)
    if job.steps:
        out["steps"] = [step_to_dict(s) for s in job.steps]
    return out


def definition_to_dict(definition: PipelineDefinition) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if definition.name is not None:
        out["name"] = definition.name
    if definition.triggers:
        out["on"] = {t.event: to_plain(t.config) for t in definition.triggers}
    if definition.permissions is not None:
        out["permissions"] = to_plain(definition.permissions)
    if definition.env:
        out["env"] = to_plain(definition.env)
    for k, v in definition.extras.items():
        out[k] = to_plain(v)
    if definition.jobs:
        out["jobs"] = {name: job_to_dict(job) for name, job in definition.jobs.items()}
    return out


class _Dumper(yaml.SafeDumper):
    """Block style, indented sequences, literal blocks for multi-line strings."""

    def increase_indent(self, flow=False, indentless=False):
        return super().increase_indent(flow, False)


def _represent_str(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_Dumper.add_representer(str, _represent_str)


def dump_yaml(data: Any) -> str:
    return yaml.dump(
        data,
        Dumper=_Dumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=1000,
    )


def serialize(definition: PipelineDefinition) -> str:
    """Emit YAML with key order name, on, permissions, env, <extras>, jobs."""
    data = definition_to_dict(definition)
    if not data:
        return ""
    return dump_yaml(data)


# ---------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------

def iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for k, v in value.items():
            if isinstance(k, str):
                yield k
            yield from iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_strings(v)


def expressions(text: str) -> List[str]:
    """Bodies of every `${{ ... }}` expression in `text`, stripped."""
    return [m.group(1).strip() for m in EXPRESSION_RE.finditer(text)]


def secrets_in(values: Iterable[str]) -> Set[str]:
    names: Set[str] = set()
    for s in values:
        for expr in expressions(s):
            names.update(SECRET_NAME_RE.findall(expr))
    return names


def referenced_secrets(definition: PipelineDefinition) -> Tuple[str, ...]:
    """Every secret name referenced through `${{ secrets.NAME }}`, sorted."""
    return tuple(sorted(secrets_in(iter_strings(definition_to_dict(definition)))))
