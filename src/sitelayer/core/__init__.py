"""Core modules for sitelayer - centralized definitions and utilities."""

from sitelayer.core.errors import (
    ApplyCancelled,
    AsyncConditionTimeout,
    ConfigurationError,
    CycleError,
    DuplicateAddress,
    ExitCode,
    ParseError,
    PartialApplyError,
    PermanentProviderError,
    ProviderError,
    ResourceNotFound,
    SchemaViolation,
    SiteLayerError,
    StateLockError,
    TransientProviderError,
    UnknownReference,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "SiteLayerError",
    "ConfigurationError",
    # Validation
    "ParseError",
    "DuplicateAddress",
    "UnknownReference",
    "SchemaViolation",
    "CycleError",
    # Execution
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ResourceNotFound",
    "AsyncConditionTimeout",
    "ApplyCancelled",
    "StateLockError",
    "PartialApplyError",
    "main_with_error_handling",
    "format_error_message",
]
