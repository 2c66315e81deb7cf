# cli.py
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

import click

from ciadvisor.cache import DEFAULT_CACHE_DIR, AnalysisCache
from ciadvisor.collaborators import LocalFileStore, YamlPolicyProvider, discover_pipeline_files
from ciadvisor.config import EngineConfig, Policy
from ciadvisor.coordination import DEFAULT_OUTPUT_DIR, PipelineRequest, resolve
from ciadvisor.engine import Engine
from ciadvisor.errors import (
    AnalysisError,
    InvalidPatchError,
    ParseError,
    PatchConflictError,
    PolicyError,
    UnknownRecommendationError,
    UnresolvedConflictError,
)
from ciadvisor.ui.console import Console, get_console, set_console

EXIT_ERROR = 1
EXIT_UNRESOLVED = 2
EXIT_INTERRUPTED = 130


def load_policy(path: str | None) -> Policy:
    """
    Load the policy file given on the command line.

    Exits with an error message when the file is invalid.
    """
    if not path:
        return Policy()
    try:
        return YamlPolicyProvider(path).get_policies()
    except PolicyError as e:
        get_console().print_error(
            "Invalid policy",
            e.message,
            details=[f"file: {e.source}"],
            suggestion="Allowed keys: known-secrets, trusted-actions, required-pipeline-types, "
                       "forbidden-actions, max-complexity",
        )
        sys.exit(EXIT_ERROR)


def read_pipeline(path: str) -> str:
    console = get_console()
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        console.print_error("Cannot read pipeline", f"Could not read {path}", details=[str(e)])
        sys.exit(EXIT_ERROR)


def _fail(exc: Exception) -> None:
    get_console().print_exception(exc)
    sys.exit(EXIT_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciadvisor: analyse, score and fix CI pipeline definitions."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["engine"] = Engine(EngineConfig.from_env())


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--policy", "policy_path", default=None, help="Policy YAML file")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.pass_context
def analyze(ctx, file, policy_path, as_json):
    """Analyse one pipeline file and list ranked recommendations."""
    console = get_console()
    policy = load_policy(policy_path)
    text = read_pipeline(file)

    try:
        report = ctx.obj["engine"].analyze(text, policy, path=file)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(e)

    if as_json:
        console.print_json(report.to_dict())
    else:
        console.print_report(report)
    if report.error:
        if not as_json:
            console.print_error("Pipeline could not be parsed", report.error, details=[f"file: {file}"])
        sys.exit(EXIT_ERROR)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option(
    "--recommendation",
    "-r",
    "ids",
    multiple=True,
    required=True,
    help="Recommendation id to apply (repeatable); see `ciadvisor analyze`",
)
@click.option("--policy", "policy_path", default=None, help="Policy YAML file")
@click.option("--write", is_flag=True, default=False, help="Rewrite FILE in place")
@click.option("--output", "-o", default=None, help="Write the result to this file instead of stdout")
@click.pass_context
def apply(ctx, file, ids, policy_path, write, output):
    """Apply selected recommendations; all of them or none."""
    console = get_console()
    if write and output:
        console.print_error("Conflicting options", "Use either --write or --output, not both.")
        sys.exit(EXIT_ERROR)
    policy = load_policy(policy_path)
    text = read_pipeline(file)

    try:
        new_text = ctx.obj["engine"].apply(text, ids, policy)
    except ParseError as e:
        console.print_error("Pipeline could not be parsed", str(e), details=[f"file: {file}"])
        sys.exit(EXIT_ERROR)
    except UnknownRecommendationError as e:
        console.print_error(
            "Unknown recommendation",
            str(e),
            suggestion=f"List the available ids with:\n  ciadvisor analyze {file}",
        )
        sys.exit(EXIT_ERROR)
    except PatchConflictError as e:
        console.print_error(
            "Recommendations conflict",
            "Nothing was applied; these patches touch the same field:",
            details=[f"{a.op.value} {a.target}  <->  {b.op.value} {b.target}" for a, b in e.conflicts],
            suggestion="Apply them one at a time.",
        )
        sys.exit(EXIT_ERROR)
    except InvalidPatchError as e:
        console.print_error("Patch rejected", str(e))
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(e)

    if write or output:
        target = file if write else output
        LocalFileStore().write(target, new_text)
        console.print_info(f"Applied {len(ids)} recommendation(s) to {target}")
    else:
        click.echo(new_text, nl=False)


def _parse_pairs(values, option: str) -> list[tuple[str, str]]:
    pairs = []
    for v in values:
        key, sep, value = v.partition("=")
        if not sep or not key or not value:
            raise click.BadParameter(f"expected KEY=VALUE, got '{v}'", param_hint=option)
        pairs.append((key, value))
    return pairs


@cli.command()
@click.argument("types", nargs=-1, required=True)
@click.option("--output-dir", default=DEFAULT_OUTPUT_DIR, show_default=True, help="Directory for generated pipelines")
@click.option("--project-name", default=None, help="Project name shared by every pipeline")
@click.option("--ecosystem", "ecosystems", multiple=True, help="Ecosystem (docker, aws, npm, pypi); repeatable")
@click.option("--from", "sources", multiple=True, help="TYPE=FILE: take that pipeline's text from FILE")
@click.option("--resolve", "choices", multiple=True, help="CONFLICT_ID=ACTION for an unresolved conflict")
@click.option("--policy", "policy_path", default=None, help="Policy YAML file")
@click.option("--write", is_flag=True, default=False, help="Write coordinated pipelines given with --from")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON")
@click.pass_context
def plan(ctx, types, output_dir, project_name, ecosystems, sources, choices, policy_path, write, as_json):
    """Plan several pipelines together: order, conflicts, shared resources."""
    console = get_console()
    policy = load_policy(policy_path)
    texts = {t: read_pipeline(f) for t, f in _parse_pairs(sources, "--from")}
    unknown = sorted(set(texts) - set(types))
    if unknown:
        console.print_error("Unknown pipeline type", f"--from names types not requested: {', '.join(unknown)}")
        sys.exit(EXIT_ERROR)

    requests = [
        PipelineRequest(
            type=t,
            text=texts.get(t),
            ecosystems=tuple(ecosystems),
            project_name=project_name,
        )
        for t in types
    ]
    store = LocalFileStore()
    engine: Engine = ctx.obj["engine"]
    try:
        result = engine.plan(requests, policy, file_store=store, output_dir=output_dir)
        if choices:
            result = resolve(result, dict(_parse_pairs(choices, "--resolve")), file_store=store, policy=policy)
    except (ValueError, AnalysisError) as e:
        console.print_error("Planning failed", str(e))
        sys.exit(EXIT_ERROR)

    if as_json:
        console.print_json(result.to_dict())
    else:
        console.print_plan(result)

    if not result.resolved:
        console.print_error(
            "Unresolved conflicts",
            f"{len(result.unresolved)} conflict(s) need a decision.",
            details=[c.id for c in result.unresolved],
            suggestion="Choose a resolution for each, e.g.:\n  ciadvisor plan ... --resolve 'CONFLICT_ID=ACTION'",
        )
        sys.exit(EXIT_UNRESOLVED)

    if write:
        by_type = {}
        for p in result.pipelines:
            if p.type in texts and p.type not in by_type:
                by_type[p.type] = p.id
        try:
            out = engine.apply_coordination(result, {pid: texts[t] for t, pid in by_type.items()})
        except (UnresolvedConflictError, AnalysisError) as e:
            console.print_error("Coordination failed", str(e))
            sys.exit(EXIT_ERROR)
        for pid, text in out.items():
            path = result.pipeline(pid).output_path
            store.write(path, text)
            console.print_info(f"Wrote {path}")


@cli.command()
@click.argument("directory", default=".", type=click.Path(file_okay=False))
@click.option("--pattern", "patterns", multiple=True, help="Glob relative to DIRECTORY (default .github/workflows/*.yml)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Report cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, show_default=True, help="Reuse reports of unchanged files")
@click.option("--policy", "policy_path", default=None, help="Policy YAML file")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print results as JSON")
@click.pass_context
def scan(ctx, directory, patterns, workers, cache_dir, use_cache, policy_path, as_json):
    """Analyse every pipeline file under DIRECTORY in parallel."""
    console = get_console()
    policy = load_policy(policy_path)
    files = discover_pipeline_files(directory, patterns)
    if not files:
        console.print_error(
            "No pipeline files found",
            f"Nothing to scan under {directory}.",
            details=["Looked for:", "  .github/workflows/*.yml", "  .github/workflows/*.yaml"],
            suggestion="Point at a repository root or pass --pattern.",
        )
        sys.exit(EXIT_ERROR)

    console.print_debug(f"scanning {len(files)} file(s) under {directory}")
    cache = AnalysisCache(cache_dir) if use_cache else None
    cancel = threading.Event()
    try:
        result = ctx.obj["engine"].analyze_batch(
            [str(f) for f in files],
            file_store=LocalFileStore(),
            policy=policy,
            max_workers=workers,
            cancel_event=cancel,
            cache=cache,
        )
    except KeyboardInterrupt:
        cancel.set()
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(e)

    if cache is not None:
        for path in result.scores:
            cache.prune(path)

    if as_json:
        console.print_json(result.to_dict())
    else:
        console.print_batch(result)
    if result.failures:
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    cli()
