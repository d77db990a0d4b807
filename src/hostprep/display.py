# display.py
# All terminal output for hostprep.
#
# This module owns presentation entirely. runner.py and cli.py never format
# strings — they call named functions here. Swap this file to change the UI.
#
# Every value that comes from a step, a collaborator or settings goes through
# escape() before it lands in markup: error text routinely contains [paths].
#
# Colour language:
#   cyan    — run / step boundaries
#   dim     — already satisfied, nothing to do
#   yellow  — retries, warnings, waits
#   green   — success
#   red     — failures, aborts, cancellation

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from hostprep.config import Settings
from hostprep.models import RunReport, Step, StepStatus

console = Console()

_STATUS_STYLE = {
    StepStatus.SKIPPED: ("SKIPPED", "dim"),
    StepStatus.SUCCEEDED: ("SUCCEEDED", "bold green"),
    StepStatus.FAILED: ("FAILED", "bold red"),
    StepStatus.NOT_ATTEMPTED: ("NOT ATTEMPTED", "yellow"),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    """Truncate, then escape for markup."""
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


def _status(status: StepStatus) -> str:
    text, style = _STATUS_STYLE[status]
    return f"[{style}]{text}[/{style}]"


# ---------------------------------------------------------------------------
# Run boundaries
# ---------------------------------------------------------------------------


def run_start(total: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]PROVISIONING — {total} step(s)[/cyan]", style="cyan"))


def cancelled(next_step: str) -> None:
    console.print()
    console.print(
        _label("CANCELLED", "red"),
        f"[red] Stop requested before [bold]{escape(next_step)}[/bold]. "
        "Remaining steps not attempted.[/red]",
    )


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]\n"
            "[dim]Remaining steps were not attempted. Fix the cause and re-run; "
            "completed steps will be skipped.[/dim]",
            title=_label("ABORT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------------


def step_start(index: int, total: int, name: str, description: str) -> None:
    console.print()
    suffix = f"  [dim]{escape(description)}[/dim]" if description else ""
    console.print(
        f"[bold cyan]  STEP \\[{index + 1}/{total}][/bold cyan]  [white]{escape(name)}[/white]{suffix}"
    )


def precondition_error(name: str, message: str) -> None:
    console.print(
        f"  [yellow]⚠ Precondition check raised[/yellow] [dim]{_mono(message)}[/dim]\n"
        "  [yellow]  Treating as not yet done.[/yellow]"
    )


def step_skipped(name: str) -> None:
    console.print("  [dim]↳ Already in place — skipped[/dim]")


def attempt_start(attempt: int, max_attempts: int) -> None:
    if max_attempts > 1:
        console.print(f"  [cyan]↳ Attempt {attempt}/{max_attempts}[/cyan]")


def attempt_failed(kind: str, message: str) -> None:
    if kind == "postcondition":
        console.print(f"  [yellow]✗ Ran but did not take:[/yellow] [dim]{_mono(message, 200)}[/dim]")
    else:
        console.print(f"  [red]✗ Action failed:[/red] [dim]{_mono(message, 200)}[/dim]")


def retry_wait(seconds: float) -> None:
    console.print(f"  [dim yellow]  waiting {seconds:.1f}s before retrying…[/dim yellow]")


def step_succeeded(name: str, attempts: int, elapsed: float) -> None:
    tries = f", {attempts} attempts" if attempts > 1 else ""
    console.print(f"  [bold green]✓ Done[/bold green]  [dim]{elapsed:.1f}s{tries}[/dim]")


def step_failed(name: str, kind: str, message: str, aborting: bool) -> None:
    policy = "aborting run" if aborting else "continuing"
    console.print(
        f"  [bold red]✗ {escape(name)} failed[/bold red] [dim]({kind}; {policy})[/dim]"
    )


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


def step_table(groups: dict[str, list[Step]], states: dict[str, bool] | None = None) -> None:
    """Render the catalog. ``states`` maps step name → precondition result."""
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Group", style="dim", width=14)
    table.add_column("Step", style="bold white")
    table.add_column("On failure", justify="center", width=10)
    if states is not None:
        table.add_column("State", justify="center", width=10)
    table.add_column("Description", style="white")

    for group, steps in groups.items():
        for step in steps:
            row = [escape(group), escape(step.name), step.on_failure.value]
            if states is not None:
                row.append("[green]done[/green]" if states[step.name] else "[yellow]pending[/yellow]")
            row.append(escape(step.description))
            table.add_row(*row)

    console.print(table)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def run_summary(report: RunReport) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", style="white")
    table.add_column("Status", justify="center", width=14)
    table.add_column("Attempts", justify="center", width=8)
    table.add_column("Last error", style="dim white")

    for result in report.results:
        table.add_row(
            escape(result.name),
            _status(result.status),
            str(result.attempts) if result.attempts else "-",
            _mono(result.error or "", 80),
        )

    counts = report.counts
    subtitle = ", ".join(f"{n} {s.value.replace('_', ' ')}" for s, n in counts.items() if n)
    border = "green" if report.ok else "red"
    console.print(
        Panel(
            table,
            title=_label("RUN REPORT", border),
            subtitle=f"[dim]{subtitle or 'no steps'}[/dim]",
            border_style=border,
            padding=(0, 1),
        )
    )

    for result in report.failed:
        console.print(
            f"[red]  {escape(result.name)}[/red] [dim]({result.error_kind})[/dim]: "
            f"{escape(result.error or '')}",
            soft_wrap=True,
        )
    console.print()


# ---------------------------------------------------------------------------
# After a successful run
# ---------------------------------------------------------------------------


def toolchain_versions(versions: dict[str, str | None]) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("Tool", style="bold white", width=10)
    table.add_column("Version", style="white")

    for tool, version in versions.items():
        shown = escape(version) if version else "[yellow]not found[/yellow]"
        table.add_row(escape(tool), shown)

    console.print(
        Panel(table, title=_label("TOOLCHAIN", "cyan"), border_style="cyan", padding=(0, 1))
    )


def usage_info(settings: Settings) -> None:
    home = escape(str(settings.home))
    ollama = escape(settings.ollama_url)
    console.print(
        Panel(
            "[bold white]ComfyUI[/bold white]\n"
            f"  Launch: {home}/launch_comfyui.sh\n"
            f"  Access: http://localhost:{settings.comfyui_port}\n\n"
            "[bold white]Ollama[/bold white]\n"
            "  Service: sudo systemctl status ollama\n"
            "  Models:  ollama list · ollama pull <model>\n"
            f"  API:     {ollama}\n\n"
            "[bold white]Open WebUI[/bold white]\n"
            f"  Launch:  {home}/launch_openwebui.sh\n"
            "  Service: systemctl --user start openwebui\n"
            f"  Access:  http://localhost:{settings.openwebui_port}\n\n"
            f"[dim]All tools are installed in {home}/[/dim]",
            title=_label("USAGE", "green"),
            border_style="green",
            padding=(0, 2),
        )
    )
    console.print()
