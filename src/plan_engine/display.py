# display.py
# Terminal output for the plan-engine CLI.
#
# This module owns presentation entirely. The engine never formats output;
# run.py calls the named functions here once a run has finished.
#
# Colour language:
#   cyan    — plan / configuration
#   green   — completed
#   yellow  — stopped on a budget
#   red     — failed, errors
#   magenta — log domains

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from plan_engine.models import ExecutionState, ExecutionStatus, LogEntry, LogLevel, Plan

console = Console()

_STATUS_COLORS = {
    ExecutionStatus.RUNNING: "cyan",
    ExecutionStatus.COMPLETED: "green",
    ExecutionStatus.STOPPED: "yellow",
    ExecutionStatus.FAILED: "red",
}

_LEVEL_STYLES = {
    LogLevel.DEBUG: "dim",
    LogLevel.INFO: "white",
    LogLevel.WARN: "yellow",
    LogLevel.ERROR: "bold red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def plan_loaded(plan: Plan, engine_name: str) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("ID", style="bold white", width=14)
    table.add_column("Type", style="dim white", width=12)
    table.add_column("Title", style="white")

    for index, step in enumerate(plan.steps):
        table.add_row(str(index), step.id, step.type.value, _mono(step.title, 60))

    console.print(
        Panel(
            table,
            title=_label(f"PLAN {plan.id}", "cyan"),
            subtitle=f"[dim]Goal: {plan.goal} · provider: {engine_name}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


def run_summary(state: ExecutionState, plan: Plan) -> None:
    color = _STATUS_COLORS[state.status]
    duration = f"{state.end_time - state.start_time}ms" if state.end_time else "—"
    reason = state.stop_reason.value if state.stop_reason else "—"

    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Field", style="dim", width=14)
    table.add_column("Value", style="white")
    table.add_row("Run", state.run_id)
    table.add_row("Status", f"[bold {color}]{state.status.value}[/bold {color}]")
    table.add_row("Stop reason", reason)
    table.add_row("Steps", f"{state.current_step_index}/{len(plan.steps)}")
    table.add_row("Iterations", str(state.iteration_count))
    table.add_row(
        "Tokens",
        f"{state.token_usage.total} (in {state.token_usage.input} / out {state.token_usage.output})",
    )
    table.add_row("Duration", duration)

    console.print()
    console.print(Panel(table, title=_label("RUN RESULT", color), border_style=color, padding=(0, 1)))

    if state.errors:
        errors = Table(box=box.SIMPLE, show_header=True, header_style="bold red", padding=(0, 1))
        errors.add_column("Step", width=14)
        errors.add_column("Recoverable", width=12)
        errors.add_column("Message", style="red")
        for error in state.errors:
            errors.add_row(error.step_id or "—", "yes" if error.recoverable else "no", _mono(error.message))
        console.print(errors)


def log_table(logs: list[LogEntry]) -> None:
    if not logs:
        return
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    table.add_column("Level", width=6)
    table.add_column("Domain/Op", style="magenta", width=28)
    table.add_column("Message")
    for entry in logs:
        style = _LEVEL_STYLES[entry.level]
        table.add_row(
            Text(entry.level.value, style=style),
            f"{entry.domain}/{entry.operation}",
            Text(_mono(entry.message), style=style),
        )
    console.print(table)


def halt(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{message}[/bold red]",
            title=_label("HALTED", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
