# cli.py
# Entry point. Config and wiring only — no logic lives here.
#
#   hostprep list                 show every step
#   hostprep status               evaluate preconditions, change nothing
#   hostprep run --group ai-tools run one group
#   hostprep run --only uv        run selected steps (declaration order kept)
#
# Exit code: 0 iff no step ended FAILED, 1 otherwise, 2 on usage errors.

import logging
import signal
import sys
import threading

import click
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.logging import RichHandler

from hostprep import catalog, display
from hostprep.config import load_settings
from hostprep.runner import StepRunner

GROUP_CHOICE = click.Choice([catalog.ALL, *catalog.GROUPS])


def _configure_logging(verbose: bool) -> None:
    # -v shows commands and retries (INFO); DEBUG stays out of the console.
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False)],
        force=True,
    )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log commands and retries.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Provision an Ubuntu host for ComfyUI, Ollama and Open WebUI."""
    load_dotenv()
    _configure_logging(verbose)
    try:
        ctx.obj = load_settings()
    except ValidationError as exc:
        raise click.UsageError(f"Invalid HOSTPREP_* settings:\n{exc}") from exc


def _groups(settings, group: str) -> dict:
    groups = catalog.build(settings)
    if group == catalog.ALL:
        return groups
    return {group: groups[group]}


@main.command("list")
@click.option("--group", type=GROUP_CHOICE, default=catalog.ALL, show_default=True)
@click.pass_obj
def list_steps(settings, group: str) -> None:
    """List available steps."""
    display.step_table(_groups(settings, group))


@main.command()
@click.option("--group", type=GROUP_CHOICE, default=catalog.ALL, show_default=True)
@click.pass_obj
def status(settings, group: str) -> None:
    """Show which steps are already in place. Makes no changes."""
    groups = _groups(settings, group)
    runner = StepRunner(settings.run_policy())
    states = {step.name: runner.is_satisfied(step) for steps in groups.values() for step in steps}
    display.step_table(groups, states)


@main.command()
@click.option("--group", type=GROUP_CHOICE, default=catalog.ALL, show_default=True)
@click.option("--only", multiple=True, metavar="STEP", help="Run only this step (repeatable).")
@click.option("--stop-on-failure", is_flag=True, help="Abort on any failure, even best-effort steps.")
@click.pass_obj
def run(settings, group: str, only: tuple[str, ...], stop_on_failure: bool) -> None:
    """Run the provisioning steps."""
    try:
        steps = catalog.select(catalog.build(settings), group, only)
    except KeyError as exc:
        raise click.BadParameter(exc.args[0], param_hint="--only") from exc

    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
    try:
        report = StepRunner(settings.run_policy(stop_on_failure)).run(steps, cancel=cancel)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if report.ok and not report.cancelled:
        if group in (catalog.ALL, catalog.DEPENDENCIES):
            display.toolchain_versions(catalog.toolchain_versions())
        if group in (catalog.ALL, catalog.AI_TOOLS):
            display.usage_info(settings)

    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
