"""Lifecycle table CLI commands."""

from __future__ import annotations

import json

from rich.console import Console
from rich.table import Table

from ..lifecycle.states import TRANSITIONS, LifecycleState, is_terminal, parse_state


def _sorted_values(states: frozenset[LifecycleState]) -> list[str]:
    return sorted(s.value for s in states)


def run_states(*, output_json: bool = False) -> int:
    if output_json:
        data = {state.value: _sorted_values(TRANSITIONS[state]) for state in LifecycleState}
        print(json.dumps(data, indent=2))
        return 0

    console = Console()
    table = Table(title="Lifecycle transitions")
    table.add_column("from", style="cyan", no_wrap=True)
    table.add_column("allowed targets")

    for state in LifecycleState:
        targets = _sorted_values(TRANSITIONS[state])
        label = f"{state.value} (terminal)" if is_terminal(state) else state.value
        table.add_row(label, ", ".join(targets) if targets else "[dim]none[/dim]")

    console.print(table)
    return 0


def run_allowed(state: str, *, output_json: bool = False) -> int:
    err = Console(stderr=True)
    try:
        current = parse_state(state)
    except ValueError as e:
        err.print(str(e), style="bold red")
        return 1

    targets = _sorted_values(TRANSITIONS[current])
    if output_json:
        print(json.dumps({"state": current.value, "allowed": targets}, indent=2))
        return 0

    console = Console()
    if not targets:
        console.print(f"{current.value}: no outgoing transitions")
        return 0
    for target in targets:
        console.print(target)
    return 0


def run_check(from_state: str, to_state: str) -> int:
    """Exit 0 if the edge is legal, 1 otherwise."""
    console = Console()
    err = Console(stderr=True)
    try:
        source = parse_state(from_state)
        target = parse_state(to_state)
    except ValueError as e:
        err.print(str(e), style="bold red")
        return 1

    allowed = TRANSITIONS[source]
    if target not in allowed:
        allowed_text = ", ".join(_sorted_values(allowed)) or "none"
        err.print(
            f"Invalid state transition: {source.value} -> {target.value} (allowed: {allowed_text})",
            style="bold red",
        )
        return 1

    console.print(f"[green]ok[/green] {source.value} -> {target.value}")
    return 0
