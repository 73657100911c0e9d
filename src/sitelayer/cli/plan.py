"""
CLI command for planning (dry-run) a site.
"""

import asyncio
import json
from typing import Any

from sitelayer.cli.ux import console, header, info, print_table, warning
from sitelayer.config.settings import Settings
from sitelayer.core.errors import main_with_error_handling
from sitelayer.orchestration.plan_builder import ChangeAction, ChangeSetEntry, Plan
from sitelayer.orchestration.results import PlanResult
from sitelayer.orchestrator import SiteOrchestrator

ACTION_STYLES = {
    ChangeAction.create: ("+", "success"),
    ChangeAction.update: ("~", "warning"),
    ChangeAction.replace: ("-/+", "orange"),
    ChangeAction.destroy: ("-", "error"),
    ChangeAction.noop: (" ", "muted"),
}


def entry_to_dict(entry: ChangeSetEntry) -> dict[str, Any]:
    return {
        "key": entry.key,
        "address": entry.address,
        "kind": entry.kind,
        "action": entry.action.value,
        "phase": entry.phase.value,
        "reason": entry.reason,
        "depends_on": list(entry.depends_on),
        "provider_id": entry.provider_id,
        "create_before_destroy": entry.create_before_destroy,
    }


def print_plan_entries(plan: Plan) -> None:
    rows = []
    for index, entry in enumerate(plan, 1):
        symbol, style = ACTION_STYLES[entry.action]
        rows.append(
            [
                str(index),
                f"[{style}]{symbol}[/{style}]",
                entry.address,
                f"[{style}]{entry.describe()}[/{style}]",
                entry.reason,
            ]
        )
    print_table(["#", "", "Address", "Action", "Reason"], rows)


def format_summary(summary: dict[str, int]) -> str:
    order = ["create", "update", "replace", "destroy", "noop"]
    parts = [f"{summary[action]} to {action}" for action in order if summary.get(action)]
    return ", ".join(parts) or "nothing to do"


def print_plan_summary(result: PlanResult) -> None:
    """Print the ordered change set."""
    header(f"Plan: {result.document}")
    console.print()

    for message in result.warnings:
        warning(message)

    if not result.entries:
        info("No resources in desired state or in stored state")
        console.print()
        return

    print_plan_entries(result.plan)
    console.print()
    if result.has_changes:
        console.print(f"[bold]Plan:[/bold] {format_summary(result.summary)}")
    else:
        console.print("[success]No changes. Infrastructure matches the document.[/success]")
    console.print()


def print_plan_json(result: PlanResult) -> None:
    output = {
        "document": str(result.document),
        "has_changes": result.has_changes,
        "summary": result.summary,
        "warnings": result.warnings,
        "entries": [entry_to_dict(entry) for entry in result.entries],
    }
    print(json.dumps(output, indent=2))


@main_with_error_handling()
def plan_command(
    document: str,
    settings: Settings,
    *,
    destroy: bool = False,
    refresh: bool = False,
    output_format: str = "text",
) -> int:
    """
    Show what an apply would do without changing anything.

    Returns:
        Exit code (0 success, 12 validation error)
    """

    async def run() -> PlanResult:
        async with SiteOrchestrator(document, settings=settings) as orchestrator:
            return await orchestrator.plan(destroy=destroy, refresh=refresh)

    result = asyncio.run(run())

    if output_format == "json":
        print_plan_json(result)
    else:
        print_plan_summary(result)
    return 0
