"""Structural diff CLI command."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from ..versioning.diff import diff_payloads
from ..versioning.models import ChangeKind

_KIND_STYLES = {
    ChangeKind.ADDED: "green",
    ChangeKind.REMOVED: "red",
    ChangeKind.MODIFIED: "yellow",
}


def _load_payload(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data


def _render(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def run_diff(old_path: Path, new_path: Path, *, output_json: bool = False) -> int:
    err = Console(stderr=True)
    try:
        old = _load_payload(old_path)
        new = _load_payload(new_path)
    except (OSError, ValueError) as e:
        err.print(f"Cannot load payload: {e}", style="bold red")
        return 1

    changes = diff_payloads(old, new)
    if output_json:
        print(json.dumps([c.to_dict() for c in changes], indent=2))
        return 0

    console = Console()
    if not changes:
        console.print("No differences")
        return 0

    table = Table(title=f"{old_path.name} -> {new_path.name}")
    table.add_column("path", style="cyan")
    table.add_column("change")
    table.add_column("old", style="dim")
    table.add_column("new")
    for c in changes:
        table.add_row(
            c.path,
            f"[{_KIND_STYLES[c.kind]}]{c.kind.value}[/]",
            "" if c.kind is ChangeKind.ADDED else _render(c.old_value),
            "" if c.kind is ChangeKind.REMOVED else _render(c.new_value),
        )
    console.print(table)
    return 0
