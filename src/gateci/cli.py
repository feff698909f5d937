# cli.py
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import click

from gateci.controller import build_controller
from gateci.dag import topo_levels, validate_pipeline
from gateci.errors import CIError, DefinitionError, UnknownRun
from gateci.git_facts.git import trigger_from_git
from gateci.loader import load_pipeline
from gateci.model import FailureKind, Pipeline, RunStatus, StageState, Verdict
from gateci.secrets import SecretStore
from gateci.settings import Settings
from gateci.ui.console import Console, get_console, set_console

EXIT_SUCCESS = 0
EXIT_GATED = 1
EXIT_INFRASTRUCTURE = 2
EXIT_DEFINITION = 3
EXIT_INTERRUPTED = 130

DEFAULT_PIPELINE_FILES = ("gateci_pipeline.py", "gateci.yml", "gateci.yaml", "gateci.json")


def exit_code_for(status: RunStatus) -> int:
    """
    0 success, 1 gated failure, 2 infrastructure failure (wins when both
    happen in one run), 130 cancelled.
    """
    if status.verdict == Verdict.SUCCESS:
        return EXIT_SUCCESS
    if status.verdict == Verdict.CANCELLED:
        return EXIT_INTERRUPTED
    kinds = {r.kind for r in status.stages if r.state == StageState.FAILED}
    if kinds - {FailureKind.GATE_REJECTED}:
        return EXIT_INFRASTRUCTURE
    if FailureKind.GATE_REJECTED in kinds:
        return EXIT_GATED
    return EXIT_INFRASTRUCTURE


def find_pipeline_files() -> list[Path]:
    """Pipeline files in the current directory: the defaults plus *_pipeline.py."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINE_FILES if (current_dir / name).exists()]
    for path in current_dir.glob("*_pipeline.py"):
        if path not in found:
            found.append(path)
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or default.

    Raises:
        SystemExit(3): if no pipeline, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and not path.suffix:
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  gateci run --pipeline my_pipeline.py",
            )
            sys.exit(EXIT_DEFINITION)
        return path

    files = find_pipeline_files()
    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create gateci_pipeline.py, or specify one explicitly:\n  gateci run --pipeline my_pipeline.py",
        )
        sys.exit(EXIT_DEFINITION)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion="Specify a pipeline explicitly:\n  gateci run --pipeline gateci_pipeline.py",
        )
        sys.exit(EXIT_DEFINITION)

    return files[0]


def _load(pipeline_arg: str | None) -> tuple[Path, Pipeline]:
    path = discover_pipeline(pipeline_arg)
    try:
        return path, load_pipeline(path)
    except DefinitionError as e:
        _definition_failed(path, e)
    except Exception as e:
        get_console().print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {path}",
            details=[f"{type(e).__name__}: {e}"],
        )
        get_console().print_debug(repr(e))
        sys.exit(EXIT_DEFINITION)


def _definition_failed(path: Path | str, e: DefinitionError) -> None:
    get_console().print_error(
        "Invalid pipeline definition",
        f"{path}: {e.message}",
        details=e.problems or None,
    )
    sys.exit(EXIT_DEFINITION)


def bind_secrets(
    names: Iterable[str],
    overrides: Iterable[str],
    *,
    prefix: str = "",
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Bind declared secrets from the environment.

    Each declared NAME is read from ${prefix}NAME. An override NAME=VAR reads
    it from $VAR instead. Unbound names are left out (validation reports them).
    """
    environ = os.environ if environ is None else environ
    bindings = dict(SecretStore.from_env(names, environ, prefix=prefix))
    for item in overrides:
        name, sep, var = item.partition("=")
        var = var if sep else f"{prefix}{name}"
        value = environ.get(var)
        if value is not None:
            bindings[name] = value
    return bindings


def _settings(ctx: click.Context, **overrides) -> Settings:
    base: Settings = ctx.obj["settings"]
    return base.with_overrides(**overrides)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--home", default=None, help="State directory (defaults to $GATECI_HOME or .gateci)")
@click.pass_context
def cli(ctx, debug, home):
    """gateci: security CI pipelines with severity gates."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    environ = dict(os.environ)
    if home:
        environ["GATECI_HOME"] = home
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env(environ)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (defaults to gateci_pipeline.py if present)")
@click.option("--workers", default=None, type=int, help="Maximum stages running at once")
@click.option("--artifact-dir", default=None, type=click.Path(path_type=Path), help="Artifact store directory")
@click.option("--workspace", default=None, type=click.Path(path_type=Path), help="Job workspace directory")
@click.option("--archive-url", default=None, help="SQLAlchemy URL for the run archive")
@click.option("--grace-period", default=None, type=float, help="Seconds between SIGTERM and SIGKILL")
@click.option("--secret", "secrets", multiple=True, help="Bind a secret: NAME or NAME=ENV_VAR (repeatable)")
@click.option("--revision", default=None, help="Revision being scanned (defaults to git HEAD)")
@click.option("--ref", default=None, help="Branch or ref (defaults to the current git branch)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.name)")
@click.option("--repo-root", default=".", show_default=True, help="Directory jobs run in")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the stage plan before running")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the final run status as JSON")
@click.pass_context
def run(
    ctx, pipeline_arg, workers, artifact_dir, workspace, archive_url, grace_period,
    secrets, revision, ref, actor, repo_root, print_plan, as_json,
):
    """Run a pipeline to completion; the exit code reflects the verdict."""
    console = get_console()
    settings = _settings(
        ctx,
        max_workers=workers,
        artifact_dir=artifact_dir,
        workspace_dir=workspace,
        archive_url=archive_url,
        grace_period=grace_period,
    )
    path, pipeline = _load(pipeline_arg)
    bindings = bind_secrets(pipeline.secrets, secrets, prefix=settings.secret_prefix)
    trigger = trigger_from_git(repo_root, revision=revision, ref=ref, user=actor)

    quiet = as_json
    controller = build_controller(
        settings,
        repo_root=repo_root,
        on_update=None if quiet else (lambda _run_id, result: console.print_stage_update(result)),
    )
    try:
        try:
            run_id = controller.start(pipeline, trigger, bindings)
        except DefinitionError as e:
            _definition_failed(path, e)

        if not quiet:
            console.print_run_started(run_id, pipeline.name, len(pipeline.stages), trigger.revision, trigger.ref)
            if print_plan:
                console.print_plan(topo_levels(list(pipeline.stages)), {s.id: s.needs for s in pipeline.stages})

        try:
            status = _wait(controller, run_id)
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, cancelling run...")
            controller.cancel(run_id)
            status = _wait(controller, run_id)

        if quiet:
            console.print_json(status.to_dict())
        else:
            console.print_results(status)
        sys.exit(exit_code_for(status))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    finally:
        controller.shutdown(cancel=True)


def _wait(controller, run_id: str, poll: float = 0.5) -> RunStatus:
    # short waits keep the main thread responsive to Ctrl-C
    while True:
        try:
            return controller.wait(run_id, timeout=poll)
        except TimeoutError:
            continue


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (defaults to gateci_pipeline.py if present)")
@click.option("--secret", "secrets", multiple=True, help="Also check secret bindings: NAME or NAME=ENV_VAR")
@click.option("--check-secrets/--no-check-secrets", default=False, help="Fail if a declared secret is not bound")
@click.pass_context
def validate(ctx, pipeline_arg, secrets, check_secrets):
    """Validate a pipeline definition without running anything."""
    console = get_console()
    path, pipeline = _load(pipeline_arg)
    names = None
    if check_secrets or secrets:
        names = list(bind_secrets(pipeline.secrets, secrets, prefix=ctx.obj["settings"].secret_prefix))
    try:
        order = validate_pipeline(pipeline, names)
    except DefinitionError as e:
        _definition_failed(path, e)
    console.print_info(f"{path}: OK ({len(order)} stage(s): {', '.join(order)})")


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (defaults to gateci_pipeline.py if present)")
def plan(pipeline_arg):
    """Print the stages in dependency order, grouped by wave."""
    console = get_console()
    path, pipeline = _load(pipeline_arg)
    try:
        validate_pipeline(pipeline)
    except DefinitionError as e:
        _definition_failed(path, e)
    console.print_plan(topo_levels(list(pipeline.stages)), {s.id: s.needs for s in pipeline.stages})


@cli.command()
@click.argument("run_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print as JSON")
@click.pass_context
def status(ctx, run_id, as_json):
    """Show an archived run (or list recent runs without RUN_ID)."""
    console = get_console()
    controller = build_controller(ctx.obj["settings"])
    try:
        if run_id is None:
            runs = controller.runs()
            if as_json:
                console.print_json([r.to_dict() for r in runs])
            else:
                for r in runs:
                    console.print_info(f"{r.run_id}  {r.pipeline}  {r.verdict.value}")
            return
        try:
            st = controller.status(run_id)
        except UnknownRun as e:
            console.print_error("Unknown run", e.message)
            sys.exit(EXIT_DEFINITION)
        if as_json:
            console.print_json(st.to_dict())
        else:
            console.print_results(st)
            for r in st.stages:
                if r.state == StageState.FAILED:
                    console.print_stage_failure(r)
    finally:
        controller.shutdown()


@cli.group()
def artifacts():
    """Inspect and evict retained artifacts."""


@artifacts.command("list")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print as JSON")
@click.pass_context
def artifacts_list(ctx, run_id, as_json):
    console = get_console()
    controller = build_controller(ctx.obj["settings"])
    try:
        infos = controller.artifacts.list(run_id)
    finally:
        controller.shutdown()
    if as_json:
        console.print_json([a.to_dict() for a in infos])
    else:
        console.print_artifacts(infos)


@artifacts.command("get")
@click.argument("run_id")
@click.argument("stage_id")
@click.argument("name")
@click.option("-o", "--output", default=None, type=click.Path(path_type=Path), help="Write to a file instead of stdout")
@click.pass_context
def artifacts_get(ctx, run_id, stage_id, name, output):
    """Fetch one artifact's bytes."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    controller = build_controller(settings)
    try:
        try:
            if output is not None:
                controller.artifacts.materialize(run_id, stage_id, name, output)
                console.print_info(f"wrote {output}")
            else:
                click.echo(controller.artifacts.get(run_id, stage_id, name), nl=False)
        except CIError as e:
            console.print_error("Artifact not found", e.message)
            sys.exit(EXIT_DEFINITION)
    finally:
        controller.shutdown()


@artifacts.command("evict")
@click.argument("run_id")
@click.pass_context
def artifacts_evict(ctx, run_id):
    """Delete a run's artifacts (retention)."""
    console = get_console()
    controller = build_controller(ctx.obj["settings"])
    try:
        removed = controller.artifacts.evict(run_id)
    finally:
        controller.shutdown()
    console.print_info(f"evicted {removed} artifact(s) of run {run_id}")


if __name__ == "__main__":
    cli()
