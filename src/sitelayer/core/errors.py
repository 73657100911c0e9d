"""
Unified error handling for sitelayer.

This module provides the error taxonomy used by the orchestration core
and standardized exit codes for CLI commands.

Exit Codes:
- 0: Success
- 2: Blocked (state is locked by another apply)
- 10: Configuration error
- 11: Partial failure (some resources failed or were blocked)
- 12: Validation error (nothing was changed)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Iterable, TypeVar

import structlog

if TYPE_CHECKING:
    from sitelayer.orchestration.results import ApplyResult

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    BLOCKED = 2
    CONFIG_ERROR = 10
    PARTIAL_FAILURE = 11
    VALIDATION_ERROR = 12
    INTERRUPTED = 130
    UNKNOWN_ERROR = 127


class SiteLayerError(Exception):
    """Base exception for sitelayer errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(SiteLayerError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


# Validation errors: raised before any state or provider is touched


class ParseError(SiteLayerError):
    """Raised when a desired-state document is malformed or invalid."""

    exit_code = ExitCode.VALIDATION_ERROR


class DuplicateAddress(ParseError):
    """Two descriptors share an address."""

    def __init__(self, address: str):
        super().__init__(f"Duplicate resource address: {address}", {"address": address})
        self.address = address


class UnknownReference(ParseError):
    """A reference or depends_on entry names a missing resource or attribute."""

    def __init__(self, source: str, target: str, attribute: str | None = None):
        what = f"{target}.{attribute}" if attribute else target
        super().__init__(
            f"{source} references unknown {what}",
            {"source": source, "target": target},
        )
        self.source = source
        self.target = target
        self.attribute = attribute


class SchemaViolation(ParseError):
    """An attribute or descriptor does not match its kind's schema."""


class CycleError(SiteLayerError):
    """The dependency graph contains a cycle."""

    exit_code = ExitCode.VALIDATION_ERROR

    def __init__(self, involved_addresses: Iterable[str]):
        self.involved_addresses = list(involved_addresses)
        super().__init__(
            "Dependency cycle: " + " -> ".join(self.involved_addresses),
            {"addresses": self.involved_addresses},
        )


# Provider errors: isolated to one node and its dependents


class ProviderError(SiteLayerError):
    """Raised when a provider call fails."""

    exit_code = ExitCode.PARTIAL_FAILURE
    transient: bool = False


class TransientProviderError(ProviderError):
    """Network errors, throttling and 5xx responses. Retried with backoff."""

    transient = True


class PermanentProviderError(ProviderError):
    """Provider rejected the request. Not retried."""


class ResourceNotFound(ProviderError):
    """The provider has no object with the given id."""

    def __init__(self, kind: str, provider_id: str):
        super().__init__(
            f"{kind} {provider_id} not found",
            {"kind": kind, "provider_id": provider_id},
        )
        self.kind = kind
        self.provider_id = provider_id


class AsyncConditionTimeout(SiteLayerError):
    """An awaited external condition did not hold within its budget."""

    exit_code = ExitCode.PARTIAL_FAILURE

    def __init__(self, description: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {description}",
            {"timeout": timeout},
        )
        self.description = description
        self.timeout = timeout


class ApplyCancelled(SiteLayerError):
    """The apply was cancelled by the operator."""

    exit_code = ExitCode.INTERRUPTED


class StateLockError(SiteLayerError):
    """Another apply holds the state lock."""

    exit_code = ExitCode.BLOCKED

    def __init__(self, holder: str, acquired_at: Any = None):
        super().__init__(
            f"State is locked by {holder}",
            {"holder": holder, "acquired_at": str(acquired_at) if acquired_at else None},
        )
        self.holder = holder


class PartialApplyError(SiteLayerError):
    """Some nodes succeeded while others failed or were blocked."""

    exit_code = ExitCode.PARTIAL_FAILURE

    def __init__(self, result: ApplyResult):
        failed = [address for address, _ in result.failed]
        super().__init__(
            f"Apply finished with {len(failed)} failed and {len(result.blocked)} blocked resources",
            {"failed": failed, "blocked": result.blocked},
        )
        self.result = result


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Exit codes:
        - SiteLayerError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except SiteLayerError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: SiteLayerError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items() if v is not None)
        if detail_str:
            msg = f"{msg} ({detail_str})"
    return msg
