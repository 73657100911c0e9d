"""
CLI command for applying a site document.
"""

import asyncio
import contextlib
import json
import signal

import structlog

from sitelayer.cli.plan import entry_to_dict, format_summary
from sitelayer.cli.ux import console, error, header, print_table, success, warning
from sitelayer.config.settings import Settings
from sitelayer.core.errors import ExitCode, PartialApplyError, main_with_error_handling
from sitelayer.orchestration.results import ApplyResult, Outcome
from sitelayer.orchestrator import SiteOrchestrator

logger = structlog.get_logger()

OUTCOME_STYLES = {
    Outcome.created: "success",
    Outcome.updated: "warning",
    Outcome.replaced: "orange",
    Outcome.destroyed: "error",
    Outcome.noop: "muted",
    Outcome.failed: "error",
    Outcome.blocked: "warning",
    Outcome.cancelled: "warning",
}


def print_apply_summary(result: ApplyResult) -> None:
    """Print the per-address outcome table and any errors."""
    header("Apply")
    console.print()

    outcomes = result.outcomes()
    if result.plan is not None:
        console.print(f"[bold]Plan:[/bold] {format_summary(result.plan.summary())}")
        console.print()

    rows = []
    for address, outcome in outcomes.items():
        style = OUTCOME_STYLES[outcome]
        rows.append([address, f"[{style}]{outcome.value}[/{style}]"])
    if rows:
        print_table(["Address", "Outcome"], rows)

    if result.failed:
        console.print()
        console.print("[error]Errors:[/error]")
        for address, exc in result.failed:
            console.print(f"  [dim]•[/dim] {address}: {exc}")
    if result.blocked:
        console.print()
        warning(f"Blocked by failed dependencies: {', '.join(result.blocked)}")

    if result.sync is not None:
        console.print()
        console.print(
            f"[bold]Content:[/bold] {len(result.sync.uploaded)} uploaded, "
            f"{len(result.sync.deleted)} deleted, {len(result.sync.skipped)} unchanged"
        )
    if result.sync_error:
        console.print()
        error(f"Content sync: {result.sync_error}")

    console.print()
    duration = f" in {result.duration_seconds:.1f}s"
    if result.success:
        success(f"Apply complete: {result.changed} changed{duration}")
    elif result.cancelled:
        warning(f"Apply cancelled{duration}; run apply again to resume")
    else:
        error(f"Apply finished with errors{duration}")
    console.print()


def print_apply_json(result: ApplyResult) -> None:
    output = {
        "success": result.success,
        "duration_seconds": round(result.duration_seconds, 3),
        "outcomes": {address: outcome.value for address, outcome in result.outcomes().items()},
        "failed": [{"address": address, "error": str(exc)} for address, exc in result.failed],
        "blocked": result.blocked,
        "cancelled": result.cancelled,
        "entries": [entry_to_dict(entry) for entry in result.plan] if result.plan else [],
        "sync": (
            {
                "uploaded": result.sync.uploaded,
                "deleted": result.sync.deleted,
                "skipped": result.sync.skipped,
            }
            if result.sync is not None
            else None
        ),
        "sync_error": result.sync_error,
    }
    print(json.dumps(output, indent=2))


async def _apply(
    document: str, settings: Settings, *, destroy: bool, refresh: bool
) -> ApplyResult:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Not available on every platform; KeyboardInterrupt still stops the run
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _request_cancel, cancel_event)
    try:
        async with SiteOrchestrator(document, settings=settings) as orchestrator:
            return await orchestrator.apply(
                destroy=destroy, refresh=refresh, cancel_event=cancel_event
            )
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def _request_cancel(cancel_event: asyncio.Event) -> None:
    if not cancel_event.is_set():
        logger.warning("apply_cancel_requested")
        cancel_event.set()


@main_with_error_handling()
def apply_command(
    document: str,
    settings: Settings,
    *,
    destroy: bool = False,
    refresh: bool = False,
    output_format: str = "text",
) -> int:
    """
    Converge infrastructure to the document (or destroy it) and sync content.

    Returns:
        Exit code (0 success, 2 locked, 11 partial failure, 12 validation
        error, 130 cancelled)
    """
    result = asyncio.run(_apply(document, settings, destroy=destroy, refresh=refresh))

    if output_format == "json":
        print_apply_json(result)
    else:
        print_apply_summary(result)

    if result.cancelled:
        return ExitCode.INTERRUPTED
    if not result.success:
        raise PartialApplyError(result)
    return ExitCode.SUCCESS
