"""
convergent CLI entry point.
"""
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from convergent import __version__
from convergent.config import load_config
from convergent.detect import detect_format
from convergent.engine.engine import Engine
from convergent.engine.state import StateStore
from convergent.errors import ConfigError, ConvergentError, CycleError, ManifestError, ValidationError
from convergent.models.manifest import Manifest
from convergent.models.report import ApplyReport, ApplyStatus, NodeOutcome, NodeReport
from convergent.parsers import terraform, yaml_manifest
from convergent.providers.local import DEFAULT_BACKEND_DIR, LocalActions, LocalProvider
from convergent.reporters import html_reporter, json_reporter, markdown

_OUTCOME_COLORS = {
    "Applied": "green",
    "Destroyed": "green",
    "Failed": "bold red",
    "Blocked": "yellow",
    "NotStarted": "dim",
}

_EXIT_CODES = {
    ApplyStatus.SUCCESS: 0,
    ApplyStatus.PARTIAL_FAILURE: 1,
    ApplyStatus.TOTAL_FAILURE: 1,
    ApplyStatus.CYCLE_ERROR: 2,
    ApplyStatus.VALIDATION_ERROR: 2,
}


def _configure_logging(verbose: int, no_color: bool) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    log = logging.getLogger("convergent")
    log.handlers = [
        RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False, markup=False)
    ]
    log.setLevel(level)


def _load_manifest(path: str) -> Manifest:
    """Parse a manifest file, or every manifest file of a directory."""
    if os.path.isfile(path):
        fmt = detect_format(path)
        if fmt == "terraform":
            return terraform.parse_file(path)
        if fmt == "yaml":
            return yaml_manifest.parse_file(path)
        raise ManifestError("not a recognised manifest (expected .tf, or YAML/JSON with resources)", path)

    manifest = terraform.parse_directory(path)
    manifest.merge(yaml_manifest.parse_directory(path))
    if not manifest.source_files:
        raise ManifestError("no manifest files found", path)
    return manifest


def _parse_vars(var_files: Tuple[str, ...], pairs: Tuple[str, ...]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for vf in var_files:
        try:
            with open(vf, "r") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise click.BadParameter(f"cannot read {vf}: {exc}", param_hint="--var-file")
        if not isinstance(data, dict):
            raise click.BadParameter(f"{vf}: expected a mapping of name to value", param_hint="--var-file")
        values.update(data)
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--var")
        values[name.strip()] = value
    return values


def _build_engine(path, var, var_file, state, config_path, workers, backend_dir) -> Engine:
    config = load_config(config_path).with_overrides(
        max_workers=workers,
        state_path=state,
    )
    manifest = _load_manifest(path)
    return Engine(
        manifest,
        LocalProvider(backend_dir),
        actions=LocalActions(backend_dir),
        state=StateStore(config.state_path),
        config=config,
        variables=_parse_vars(var_file, var),
    )


def _run_interruptible(engine: Engine, operation: Callable[[], ApplyReport], stderr: Console) -> ApplyReport:
    """Run the walk off the main thread so Ctrl-C can cancel it cleanly."""
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(operation)
        while True:
            try:
                return future.result()
            except KeyboardInterrupt:
                stderr.print("[yellow]Cancelling:[/yellow] waiting for in-flight calls to finish…")
                engine.cancel()


def _detail(n: NodeReport) -> str:
    if n.error:
        return n.error[:80] + "…" if len(n.error) > 80 else n.error
    if n.blocked_by:
        return "blocked by " + ", ".join(n.blocked_by)
    return ""


def _print_summary_table(report: ApplyReport, no_color: bool) -> None:
    """Print a rich summary table to stderr."""
    tbl = Table(title=f"{report.operation.capitalize()} Summary", show_header=True, header_style="bold")
    tbl.add_column("Address", width=36)
    tbl.add_column("Kind", width=9)
    tbl.add_column("Outcome", width=11)
    tbl.add_column("Change", width=10)
    tbl.add_column("Attempts", justify="right", width=8)
    tbl.add_column("Detail")

    for n in report.nodes:
        color = _OUTCOME_COLORS.get(n.outcome.value, "") if not no_color else ""
        tbl.add_row(
            n.address,
            n.kind,
            f"[{color}]{n.outcome.value}[/{color}]" if color else n.outcome.value,
            n.change or "",
            str(n.attempts),
            _detail(n),
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _render(report: ApplyReport, output_format: str, source_label: str) -> str:
    fmt = output_format.lower()
    if fmt == "json":
        return json_reporter.build_report(report, source_label)
    if fmt == "markdown":
        return markdown.build_report(report, source_label)
    if fmt == "html":
        return html_reporter.build_report(report, source_label)
    return "\n".join(f"{name} = {value}" for name, value in report.outputs.items())


def _finish(report: ApplyReport, output_format: str, output: Optional[str], source_label: str,
            no_color: bool, stderr: Console) -> None:
    for e in report.errors:
        stderr.print(f"[red]Error:[/red] {e}", highlight=False)
    if report.nodes:
        _print_summary_table(report, no_color)

    counts = report.count_by_outcome()
    stderr.print(
        f"{report.operation.capitalize()} [bold]{report.status.value}[/bold]"
        + (" (cancelled)" if report.cancelled else "")
        + " — "
        + "  ".join(
            f"[{_OUTCOME_COLORS[o]}]{o}: {counts[o]}[/{_OUTCOME_COLORS[o]}]"
            for o in counts if counts[o] > 0
        )
    )

    content = _render(report, output_format, source_label)
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    elif content:
        click.echo(content)

    sys.exit(_EXIT_CODES[report.status])


def _engine_options(fn):
    """Options shared by every command that loads a manifest."""
    options = [
        click.argument("path", type=click.Path(exists=True)),
        click.option("--var", multiple=True, metavar="NAME=VALUE", help="Set an input variable (repeatable)."),
        click.option("--var-file", multiple=True, type=click.Path(exists=True),
                     help="YAML or JSON file of input values (repeatable)."),
        click.option("--state", type=click.Path(), default=None, help="State file (default: from config)."),
        click.option("--config", "config_path", type=click.Path(exists=True), default=None,
                     help="Engine configuration file (default: ./convergent.yaml if present)."),
        click.option("--workers", type=click.IntRange(min=1), default=None,
                     help="Maximum number of concurrent provider calls."),
        click.option("--backend-dir", type=click.Path(file_okay=False), default=DEFAULT_BACKEND_DIR,
                     show_default=True, help="Directory of the local provider's resource store."),
        click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output."),
        click.option("-v", "--verbose", count=True, help="Log progress (-v) or debug detail (-vv)."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _report_options(fn):
    fn = click.option(
        "--output", "-o",
        type=click.Path(),
        default=None,
        help="Write report to this file (default: stdout).",
    )(fn)
    fn = click.option(
        "--format", "output_format",
        type=click.Choice(["text", "json", "markdown", "html"], case_sensitive=False),
        default="text",
        show_default=True,
        help="Report format.",
    )(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """convergent: declarative, convergent infrastructure provisioning."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_engine_options
@_report_options
def apply(path, var, var_file, state, config_path, workers, backend_dir, no_color, verbose,
          output_format, output) -> None:
    """
    Bring the deployment described by PATH to its declared state.

    PATH is a manifest file or a directory of manifest files.
    """
    _configure_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _build_engine(path, var, var_file, state, config_path, workers, backend_dir)
    except ConvergentError as exc:
        stderr.print(f"[red]Parse error:[/red] {exc}", highlight=False)
        sys.exit(2)

    stderr.print(f"Loaded [bold]{len(engine.manifest.declarations)}[/bold] declaration(s).")
    report = _run_interruptible(engine, engine.apply, stderr)
    _finish(report, output_format, output, path, no_color, stderr)


@cli.command()
@_engine_options
@_report_options
@click.option("--dry-run", is_flag=True, default=False, help="List what would be deleted, in order, and exit.")
def destroy(path, var, var_file, state, config_path, workers, backend_dir, no_color, verbose,
            output_format, output, dry_run) -> None:
    """Delete everything recorded in state, consumers before producers."""
    _configure_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _build_engine(path, var, var_file, state, config_path, workers, backend_dir)
        if dry_run:
            plan = engine.plan_destroy()
    except CycleError as exc:
        stderr.print(f"[red]Error:[/red] {exc}", highlight=False)
        sys.exit(2)
    except ConvergentError as exc:
        stderr.print(f"[red]Parse error:[/red] {exc}", highlight=False)
        sys.exit(2)

    if dry_run:
        if not plan:
            stderr.print("Nothing to destroy.")
        for i, address in enumerate(plan, 1):
            click.echo(f"{i:3d}. {address}")
        sys.exit(0)

    report = _run_interruptible(engine, engine.destroy, stderr)
    _finish(report, output_format, output, path, no_color, stderr)


@cli.command()
@_engine_options
def validate(path, var, var_file, state, config_path, workers, backend_dir, no_color, verbose) -> None:
    """Check PATH for parse, input, reference and cycle errors without applying anything."""
    _configure_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _build_engine(path, var, var_file, state, config_path, workers, backend_dir)
        _, dag = engine.prepare()
    except (ValidationError, CycleError) as exc:
        errors = exc.errors if isinstance(exc, ValidationError) else [str(exc)]
        for e in errors:
            stderr.print(f"[red]Error:[/red] {e}", highlight=False)
        sys.exit(2)
    except (ManifestError, ConfigError) as exc:
        stderr.print(f"[red]Parse error:[/red] {exc}", highlight=False)
        sys.exit(2)

    stderr.print(
        f"[green]Valid:[/green] [bold]{len(dag)}[/bold] node(s), [bold]{len(dag.edge_pairs())}[/bold] dependency edge(s)."
    )
    sys.exit(0)


@cli.command()
@_engine_options
@click.option(
    "--format", "output_format",
    type=click.Choice(["text", "mermaid"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Print the apply order (text) or a Mermaid flowchart.",
)
def graph(path, var, var_file, state, config_path, workers, backend_dir, no_color, verbose,
          output_format) -> None:
    """Show the dependency graph of PATH in apply order."""
    _configure_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    try:
        engine = _build_engine(path, var, var_file, state, config_path, workers, backend_dir)
        registry, dag = engine.prepare()
    except ConvergentError as exc:
        stderr.print(f"[red]Error:[/red] {exc}", highlight=False)
        sys.exit(2)

    if output_format.lower() == "mermaid":
        outline = ApplyReport(
            status=ApplyStatus.SUCCESS,
            nodes=[
                NodeReport(address=registry[i].address, kind=registry[i].kind.value,
                           outcome=NodeOutcome.NOT_STARTED)
                for i in dag.order
            ],
            edges=dag.edge_pairs(),
        )
        click.echo(markdown._build_mermaid(outline, styled=False))
        sys.exit(0)

    for i, address in enumerate(dag.topological_order(), 1):
        deps = dag.dependencies_of(address)
        click.echo(f"{i:3d}. {address}" + (f"  <- {', '.join(deps)}" if deps else ""))
    sys.exit(0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
