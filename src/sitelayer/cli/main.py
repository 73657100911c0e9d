"""sitelayer command-line entry point."""

from __future__ import annotations

import argparse
import sys
from typing import Any, Sequence

from sitelayer.config.settings import Settings, get_settings
from sitelayer.logging import configure_logging
from sitelayer.providers import provider_names


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitelayer",
        description="Provision and converge static-site infrastructure",
    )
    parser.add_argument("--state-url", help="SQLAlchemy URL of the state database")
    parser.add_argument(
        "--provider", choices=provider_names(), help="Cloud provider (default: aws)"
    )
    parser.add_argument("--concurrency", type=int, help="Maximum provider calls in flight")
    parser.add_argument("--log-level", help="Log level for structured logs on stderr")
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Validate a site document")
    validate_parser.add_argument("document", help="Path to site YAML file")
    validate_parser.add_argument("-v", "--verbose", action="store_true",
                                 help="Show resources in dependency order")

    plan_parser = subparsers.add_parser("plan", help="Preview changes (dry-run)")
    plan_parser.add_argument("document", help="Path to site YAML file")
    plan_parser.add_argument("--destroy", action="store_true",
                             help="Plan removal of every resource in state")
    plan_parser.add_argument("--refresh", action="store_true",
                             help="Read current outputs from the provider before planning")
    plan_parser.add_argument("--output", choices=["text", "json"], default="text",
                             help="Output format (default: text)")

    apply_parser = subparsers.add_parser("apply", help="Converge infrastructure and sync content")
    apply_parser.add_argument("document", help="Path to site YAML file")
    apply_parser.add_argument("--destroy", action="store_true",
                              help="Destroy every resource in state")
    apply_parser.add_argument("--refresh", action="store_true",
                              help="Read current outputs from the provider before planning")
    apply_parser.add_argument("--output", choices=["text", "json"], default="text",
                              help="Output format (default: text)")

    state_parser = subparsers.add_parser("state", help="Inspect or repair stored state")
    state_subparsers = state_parser.add_subparsers(dest="state_command")
    list_parser = state_subparsers.add_parser("list", help="List resources in state")
    list_parser.add_argument("--output", choices=["text", "json"], default="text")
    taint_parser = state_subparsers.add_parser(
        "taint", help="Force replacement of a resource on the next apply"
    )
    taint_parser.add_argument("address", help="Resource address, e.g. storage_bucket.site")
    state_subparsers.add_parser("unlock", help="Remove a stale state lock")

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line overrides applied."""
    overrides: dict[str, Any] = {}
    if args.state_url:
        overrides["state_url"] = args.state_url
    if args.provider:
        overrides["provider"] = args.provider
    if args.concurrency is not None:
        overrides["concurrency"] = max(1, args.concurrency)
    if args.log_level:
        overrides["log_level"] = args.log_level
    return get_settings().model_copy(update=overrides)


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    settings = settings_from_args(args)
    configure_logging(settings.log_level, json=settings.log_json)

    if args.command == "validate":
        from sitelayer.cli.validate import validate_command

        sys.exit(validate_command(args.document, verbose=args.verbose))

    if args.command == "plan":
        from sitelayer.cli.plan import plan_command

        sys.exit(plan_command(
            args.document,
            settings,
            destroy=args.destroy,
            refresh=args.refresh,
            output_format=args.output,
        ))

    if args.command == "apply":
        from sitelayer.cli.apply import apply_command

        sys.exit(apply_command(
            args.document,
            settings,
            destroy=args.destroy,
            refresh=args.refresh,
            output_format=args.output,
        ))

    if args.command == "state":
        from sitelayer.cli.state import (
            state_list_command,
            state_taint_command,
            state_unlock_command,
        )

        if args.state_command == "list":
            sys.exit(state_list_command(settings, output_format=args.output))
        if args.state_command == "taint":
            sys.exit(state_taint_command(args.address, settings))
        if args.state_command == "unlock":
            sys.exit(state_unlock_command(settings))
        parser.parse_args(["state", "--help"])

    parser.print_help()
    sys.exit(0)


if __name__ == "__main__":
    main()
