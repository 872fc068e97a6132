"""Evaluate a governance profile against one lifecycle edge without committing."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from ..approval.gates import ACTOR_ROLE_KEY, ApprovalContext
from ..config import load_profile, parse_duration
from ..errors import GovernanceError, InvalidTransition
from ..governance import GovernanceBuilder, GovernanceService, blocking_reasons
from ..lifecycle.states import parse_state
from ..policy.models import RUNNING_DURATION, RUNNING_EXPERIMENTS, PolicyContext


def _load_telemetry(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: telemetry must be a JSON object")
    duration = data.get(RUNNING_DURATION)
    if isinstance(duration, str):
        data[RUNNING_DURATION] = parse_duration(duration)
    return data


async def _evaluate(
    service: GovernanceService,
    *,
    experiment: str,
    current: str,
    target: str,
    telemetry: dict[str, Any],
    metadata: dict[str, Any],
    actor: str | None,
) -> dict[str, Any]:
    source = parse_state(current)
    destination = parse_state(target)
    allowed = service.lifecycle.transition_table[source]
    if destination not in allowed:
        raise InvalidTransition(experiment, source, destination, allowed)

    policy_results = await service.policies.evaluate_all(
        PolicyContext(
            experiment_name=experiment,
            current_state=source,
            target_state=destination,
            telemetry=telemetry,
            metadata=metadata,
        )
    )
    approval_results = await service.approvals.evaluate(
        ApprovalContext(
            experiment_name=experiment,
            current_state=source,
            target_state=destination,
            actor=actor,
            metadata=metadata,
        )
    )
    reasons = blocking_reasons(policy_results, approval_results)
    return {
        "experiment_name": experiment,
        "from_state": source.value,
        "to_state": destination.value,
        "allowed": not reasons,
        "policy_results": [r.to_dict() for r in policy_results],
        "approval_results": [r.to_dict() for r in approval_results],
        "blocking_reasons": reasons,
    }


def _print_report(console: Console, report: dict[str, Any]) -> None:
    policies = Table(title="Policies")
    policies.add_column("policy", style="cyan")
    policies.add_column("severity")
    policies.add_column("compliant")
    policies.add_column("reason", style="dim")
    for r in report["policy_results"]:
        mark = "[green]yes[/green]" if r["is_compliant"] else "[red]no[/red]"
        policies.add_row(r["policy_name"], r["severity"], mark, r.get("reason", ""))

    gates = Table(title="Gates")
    gates.add_column("gate", style="cyan")
    gates.add_column("approved")
    gates.add_column("approver")
    gates.add_column("reason", style="dim")
    for r in report["approval_results"]:
        if r["is_approved"]:
            mark = "[green]yes[/green]"
        elif r["is_pending"]:
            mark = "[yellow]pending[/yellow]"
        else:
            mark = "[red]no[/red]"
        gates.add_row(r["gate_name"] or "", mark, r.get("approver", ""), r.get("reason", ""))

    console.print(policies)
    console.print(gates)
    edge = f"{report['from_state']} -> {report['to_state']}"
    if report["allowed"]:
        console.print(f"[bold green]allowed[/bold green] {edge}")
    else:
        console.print(f"[bold red]blocked[/bold red] {edge}")
        for reason in report["blocking_reasons"]:
            console.print(f"  - {reason}")


def run_evaluate(
    profile_path: Path,
    *,
    experiment: str,
    current: str,
    target: str,
    telemetry_path: Path | None = None,
    actor: str | None = None,
    role: str | None = None,
    running: Sequence[str] = (),
    output_json: bool = False,
) -> int:
    """Exit 0 when the edge would be allowed, 1 when blocked or invalid."""
    err = Console(stderr=True)
    metadata: dict[str, Any] = {}
    if role:
        metadata[ACTOR_ROLE_KEY] = role
    if running:
        metadata[RUNNING_EXPERIMENTS] = list(running)

    try:
        profile = load_profile(profile_path)
        service = GovernanceBuilder().apply_profile(profile).build()
        telemetry = _load_telemetry(telemetry_path)
        report = asyncio.run(
            _evaluate(
                service,
                experiment=experiment,
                current=current,
                target=target,
                telemetry=telemetry,
                metadata=metadata,
                actor=actor,
            )
        )
    except (GovernanceError, OSError, ValueError) as e:
        err.print(str(e), style="bold red")
        return 1

    if output_json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(Console(), report)
    return 0 if report["allowed"] else 1
