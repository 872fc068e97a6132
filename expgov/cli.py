"""CLI entrypoint for expgov."""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _configure_logging(level: str) -> None:
    """Route library logging to stderr through rich."""
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


@click.group()
@click.version_option(__version__, prog_name="expgov")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="EXPGOV_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Logging verbosity (also read from EXPGOV_LOG_LEVEL)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """expgov - experiment governance core.

    Inspect the lifecycle table, diff configuration payloads, and evaluate
    governance profiles against a lifecycle edge.
    """
    ctx.ensure_object(dict)
    _configure_logging(log_level)
    ctx.obj["log_level"] = log_level.upper()


# -----------------------------------------------------------------------------
# Lifecycle table
# -----------------------------------------------------------------------------


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def states(output_json: bool) -> None:
    """Show every lifecycle state and its allowed targets."""
    from .commands.lifecycle_cmd import run_states

    sys.exit(run_states(output_json=output_json))


@cli.command()
@click.argument("state")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def allowed(state: str, output_json: bool) -> None:
    """List the states reachable from STATE in one transition.

    Examples:

        expgov allowed draft

        expgov allowed PendingApproval --json
    """
    from .commands.lifecycle_cmd import run_allowed

    sys.exit(run_allowed(state, output_json=output_json))


@cli.command()
@click.argument("from_state", metavar="FROM")
@click.argument("to_state", metavar="TO")
def check(from_state: str, to_state: str) -> None:
    """Exit 0 if FROM -> TO is a legal edge, 1 otherwise."""
    from .commands.lifecycle_cmd import run_check

    sys.exit(run_check(from_state, to_state))


# -----------------------------------------------------------------------------
# Payload diff
# -----------------------------------------------------------------------------


@cli.command()
@click.argument("old", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("new", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "output_json", is_flag=True, help="Output changes as JSON")
def diff(old: Path, new: Path, output_json: bool) -> None:
    """Structural diff of two JSON configuration payloads.

    Examples:

        expgov diff v1.json v2.json

        expgov diff v1.json v2.json --json
    """
    from .commands.diff_cmd import run_diff

    sys.exit(run_diff(old, new, output_json=output_json))


# -----------------------------------------------------------------------------
# Profile evaluation
# -----------------------------------------------------------------------------


@cli.command()
@click.option(
    "--profile",
    "profile_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Governance profile (TOML)",
)
@click.option("--experiment", required=True, help="Experiment name")
@click.option("--current", required=True, help="Current lifecycle state")
@click.option("--target", required=True, help="Requested lifecycle state")
@click.option(
    "--telemetry",
    "telemetry_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON object with traffic_percentage, error_rate, running_duration",
)
@click.option("--actor", default=None, help="Who is requesting the transition")
@click.option("--role", default=None, help="Actor role checked by role-based gates")
@click.option(
    "--running",
    multiple=True,
    help="Experiment currently running (repeatable; used by conflict prevention)",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def evaluate(
    profile_path: Path,
    experiment: str,
    current: str,
    target: str,
    telemetry_path: Path | None,
    actor: str | None,
    role: str | None,
    running: tuple[str, ...],
    output_json: bool,
) -> None:
    """Evaluate a profile's policies and gates for one edge.

    Nothing is committed. Exit code 0 means the transition would be allowed,
    1 means it is blocked (or invalid).

    Examples:

        expgov evaluate --profile governance.toml --experiment checkout \\
            --current running --target ramping --telemetry metrics.json
    """
    from .commands.evaluate_cmd import run_evaluate

    exit_code = run_evaluate(
        profile_path,
        experiment=experiment,
        current=current,
        target=target,
        telemetry_path=telemetry_path,
        actor=actor,
        role=role,
        running=running,
        output_json=output_json,
    )
    sys.exit(exit_code)


# -----------------------------------------------------------------------------
# Audit log
# -----------------------------------------------------------------------------


@cli.command("audit-log")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--last", "last_n", type=int, default=None, help="Show only the last N events")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def audit_log(path: Path, last_n: int | None, output_json: bool) -> None:
    """Print events from a JSON Lines audit file."""
    from .commands.audit_cmd import run_audit_log

    sys.exit(run_audit_log(path, last_n=last_n, output_json=output_json))


def main() -> None:
    """Main entrypoint."""
    cli()


if __name__ == "__main__":
    main()
