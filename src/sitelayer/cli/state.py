"""
CLI commands for inspecting and repairing stored state.
"""

import asyncio
import json

from sitelayer.cli.ux import console, info, print_table, success, warning
from sitelayer.config.settings import Settings
from sitelayer.core.errors import main_with_error_handling
from sitelayer.orchestrator import SiteOrchestrator
from sitelayer.state.models import StateRecord
from sitelayer.state.store import StateStore


@main_with_error_handling()
def state_list_command(settings: Settings, *, output_format: str = "text") -> int:
    """List every resource recorded in state."""

    async def run() -> dict[str, StateRecord]:
        store = StateStore(settings.state_url)
        try:
            return await store.load()
        finally:
            await store.close()

    records = asyncio.run(run())

    if output_format == "json":
        print(json.dumps([record.model_dump(mode="json") for record in records.values()], indent=2))
        return 0

    if not records:
        info("State is empty")
        return 0

    rows = [
        [
            record.address,
            record.status.value,
            record.provider_id or "-",
            record.deposed_id or "",
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        ]
        for record in sorted(records.values(), key=lambda r: r.address)
    ]
    print_table(["Address", "Status", "Provider ID", "Deposed", "Updated"], rows)
    console.print()
    return 0


@main_with_error_handling()
def state_taint_command(address: str, settings: Settings) -> int:
    """Force replacement of ``address`` on the next apply."""

    async def run() -> StateRecord:
        async with SiteOrchestrator(settings=settings) as orchestrator:
            return await orchestrator.taint(address)

    asyncio.run(run())
    success(f"{address} will be replaced on the next apply")
    return 0


@main_with_error_handling()
def state_unlock_command(settings: Settings) -> int:
    """Remove a lock left behind by an apply that did not exit cleanly."""

    async def run() -> str | None:
        store = StateStore(settings.state_url)
        try:
            return await store.force_unlock()
        finally:
            await store.close()

    holder = asyncio.run(run())
    if holder is None:
        info("State is not locked")
    else:
        warning(f"Removed lock held by {holder}")
    return 0
