# display.py
# All terminal output for the debugger core.
#
# This module owns presentation entirely. The engine never formats strings;
# it calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : session lifecycle / routing events
#   blue    : debug commands received
#   yellow  : breakpoints, pauses, risk warnings
#   green   : success / completion
#   red     : failures, blocks, halts
#   magenta : step internals (command / output / branch)

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from entran import config
from entran.models import (
    ErrorState,
    ExecutionState,
    ExecutionStatus,
    Session,
    SessionSummary,
    StepResult,
)

console = Console(quiet=config.QUIET)

_STATUS_COLOURS = {
    ExecutionStatus.INITIALIZED: "cyan",
    ExecutionStatus.RUNNING: "blue",
    ExecutionStatus.PAUSED: "yellow",
    ExecutionStatus.COMPLETED: "green",
    ExecutionStatus.ERROR: "red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, default=str, ensure_ascii=False)
    value = value.replace("\n", " ⏎ ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _status(status: ExecutionStatus) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[bold {colour}]{status.value}[/bold {colour}]"


def _short(session_id: str) -> str:
    return session_id[:8]


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


def session_started(session: Session) -> None:
    program = session.program
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{program.name}[/bold cyan] [dim]v{program.version}[/dim]\n\n"
            f"[dim]Session    :[/dim] [white]{session.id}[/white]\n"
            f"[dim]Procedures :[/dim] [white]{len(program.procedures)}[/white]"
            f"  [dim]Steps :[/dim] [white]{program.total_steps()}[/white]\n"
            f"[dim]Risk level :[/dim] [white]{session.options.risk_level.value}[/white]"
            f"  [dim]Timeout :[/dim] [white]{session.options.timeout_ms}ms[/white]",
            title=_label("SESSION STARTED", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def session_rejected(reason: str) -> None:
    console.print(_label("SESSIONS", "red"), f"[red] {reason}[/red]")


def session_stopped(session_id: str, stopped: bool) -> None:
    if stopped:
        console.print(_label("SESSIONS", "cyan"), f"[cyan] Stopped {_short(session_id)}[/cyan]")
    else:
        console.print(
            _label("SESSIONS", "cyan"),
            f"[dim] Stop ignored — {_short(session_id)} is not active[/dim]",
        )


def sessions_swept(session_ids: list[str]) -> None:
    if not session_ids:
        return
    ids = ", ".join(_short(session_id) for session_id in session_ids)
    console.print(
        _label("SESSIONS", "cyan"),
        f"[cyan] Swept {len(session_ids)} idle session(s):[/cyan] [dim]{ids}[/dim]",
    )


# ---------------------------------------------------------------------------
# Debug commands
# ---------------------------------------------------------------------------


def command_received(session_id: str, command: str) -> None:
    console.print()
    console.print(
        _label("DEBUG", "blue"),
        f"[blue] {command}[/blue] [dim]→ {_short(session_id)}[/dim]",
    )


def breakpoint_changed(step_id: str, action: str, breakpoints: list[str]) -> None:
    console.print(
        _label("BREAKPOINT", "yellow"),
        f"[yellow] {action} {step_id}[/yellow] [dim]({len(breakpoints)} active)[/dim]",
    )


def breakpoint_hit(step_id: str) -> None:
    console.print(
        f"  [bold yellow]● Breakpoint[/bold yellow] [white]{step_id}[/white]"
        " [dim]— execution paused[/dim]"
    )


def paused(step_id: str | None) -> None:
    console.print(f"  [yellow]‖ Paused before[/yellow] [white]{step_id}[/white]")


def pause_ignored(status: ExecutionStatus) -> None:
    console.print(f"  [dim]Pause ignored — session is {status.value}[/dim]")


def command_ignored(status: ExecutionStatus) -> None:
    console.print(
        f"  [dim]No-op — session is {status.value}. Use reset to start over.[/dim]"
    )


def reset_done(session_id: str) -> None:
    console.print(f"  [cyan]↺ Session {_short(session_id)} reset to initial state[/cyan]")


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


def step_start(index: int, total: int, step_id: str, step_type: str) -> None:
    console.print(
        f"[bold cyan]  STEP [{index + 1}/{total}][/bold cyan]  "
        f"[white]{step_id}[/white] [dim]{step_type}[/dim]"
    )


def command_dispatched(command: str) -> None:
    console.print(f"  [magenta]Run[/magenta]      [bold white]{_mono(command, 140)}[/bold white]")


def command_output(output: str) -> None:
    console.print(f"  [magenta]Output[/magenta]   [white]{_mono(output or '∅', 140)}[/white]")


def branch_taken(branch: str | None, outcome: bool) -> None:
    taken = branch or "none"
    console.print(f"  [magenta]Branch[/magenta]   [white]{taken}[/white] [dim](condition={outcome})[/dim]")


def note(level: str, message: str) -> None:
    colour = {"warning": "yellow", "error": "red"}.get(level, "dim white")
    console.print(f"  [{colour}]{level.upper():<8}[/{colour}] {_mono(message, 160)}")


def step_finished(result: StepResult, duration_ms: int) -> None:
    if result.success:
        console.print(f"  [bold green]✓ ok[/bold green] [dim]{duration_ms}ms[/dim]")
    else:
        console.print(
            f"  [bold red]✗ failed[/bold red] [dim]{duration_ms}ms[/dim]  "
            f"[red]{_mono(result.error or '', 160)}[/red]"
        )


def risk_blocked(command: str, risk_level: str) -> None:
    console.print(
        Panel(
            f"[bold red]{risk_level.upper()}-risk command rejected in safe mode.[/bold red]\n\n"
            f"[white]{command}[/white]\n"
            "[dim]No process was spawned. Raise risk_level and reset to run it.[/dim]",
            title=_label("RISK GATE ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def execution_completed(total_steps: int) -> None:
    console.print()
    console.print(Rule(f"[green]EXECUTION COMPLETED — {total_steps} step(s)[/green]", style="green"))


def execution_error(error_state: ErrorState) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{error_state.error}[/bold white]\n"
            f"[dim]Step: {error_state.step_id}  ·  reset to recover[/dim]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


def state_summary(state: ExecutionState) -> None:
    console.print()
    cursor = state.current_step
    header = (
        f"Status: {_status(state.status)}   "
        f"[dim]Cursor:[/dim] [white]{cursor.procedure_id}/{cursor.step_id}[/white] "
        f"[dim](ip={cursor.instruction_pointer})[/dim]"
    )

    variables = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    variables.add_column("Tier", width=12)
    variables.add_column("Name", style="bold white", width=20)
    variables.add_column("Value", style="dim white")
    for name, value in state.frame.items():
        variables.add_row("frame", name, _mono(value, 60))
    for name, value in state.memory.persistent_vars.items():
        variables.add_row("memory", name, _mono(value, 60))
    for name, record in state.heap.tool_outputs.items():
        variables.add_row("tool_output", name, _mono(record.output, 60))

    console.print(
        Panel(
            variables,
            title=_label("EXECUTION STATE", "cyan"),
            subtitle=header,
            border_style="cyan",
            padding=(0, 1),
        )
    )


def history_table(state: ExecutionState) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", width=22)
    table.add_column("Type", width=12)
    table.add_column("OK", justify="center", width=4)
    table.add_column("ms", justify="right", width=6)
    table.add_column("Output / Error", style="dim white")

    for entry in state.execution_history:
        ok = "[bold green]✓[/bold green]" if entry.success else "[bold red]✗[/bold red]"
        detail = entry.output if entry.success else entry.error
        table.add_row(entry.step_id, entry.type, ok, str(entry.duration_ms), _mono(detail, 60))

    console.print(
        Panel(table, title="[dim]EXECUTION HISTORY[/dim]", border_style="dim", padding=(0, 1))
    )


def sessions_table(summaries: list[SessionSummary]) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("Session", width=10)
    table.add_column("Program", style="bold white")
    table.add_column("Status", width=12)
    table.add_column("Steps", justify="right", width=6)
    table.add_column("Cursor", style="dim")
    table.add_column("Risk", width=8)

    for summary in summaries:
        table.add_row(
            _short(summary.id),
            summary.program,
            _status(summary.status),
            str(summary.total_steps_executed),
            summary.current_step_id or "-",
            summary.overall_risk or "-",
        )

    console.print(Panel(table, title=_label("SESSIONS", "cyan"), border_style="cyan", padding=(0, 1)))
