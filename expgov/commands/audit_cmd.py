"""Audit log CLI command."""

from __future__ import annotations

import json
from pathlib import Path

from rich.console import Console

from ..audit_log import format_audit_event, read_audit_log


def run_audit_log(path: Path, *, last_n: int | None = None, output_json: bool = False) -> int:
    err = Console(stderr=True)
    if not path.exists():
        err.print(f"Audit log not found: {path}", style="bold red")
        return 1

    events = read_audit_log(path, last_n=last_n)
    if output_json:
        print(json.dumps([e.to_dict() for e in events], indent=2))
        return 0

    if not events:
        print("No audit events")
        return 0
    for event in events:
        print(format_audit_event(event))
    return 0
