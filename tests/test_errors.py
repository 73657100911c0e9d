"""Tests for core/errors.py.

Tests for the error taxonomy, exit codes and the CLI error-handling decorator.
"""

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
    StateLockError,
    TransientProviderError,
    UnknownReference,
    format_error_message,
    main_with_error_handling,
)
from sitelayer.orchestration.plan_builder import ChangeAction, ChangeSetEntry
from sitelayer.orchestration.results import Outcome, ResultCollector


class TestExitCodes:
    """Tests for exit code assignment."""

    def test_validation_errors_exit_12(self):
        """Parse and cycle errors abort before any change."""
        assert DuplicateAddress("a.b").exit_code == ExitCode.VALIDATION_ERROR
        assert UnknownReference("a.b", "c.d").exit_code == ExitCode.VALIDATION_ERROR
        assert SchemaViolation("bad").exit_code == ExitCode.VALIDATION_ERROR
        assert CycleError(["a.x", "b.y", "a.x"]).exit_code == ExitCode.VALIDATION_ERROR

    def test_lock_error_is_blocked(self):
        assert StateLockError("host:1").exit_code == ExitCode.BLOCKED == 2

    def test_configuration_error(self):
        assert ConfigurationError("missing").exit_code == 10

    def test_cancelled_is_interrupted(self):
        assert ApplyCancelled("stop").exit_code == 130


class TestErrorMessages:
    """Tests for error construction."""

    def test_cycle_error_lists_addresses(self):
        err = CycleError(["storage_bucket.a", "bucket_policy.b", "storage_bucket.a"])
        assert err.involved_addresses == ["storage_bucket.a", "bucket_policy.b", "storage_bucket.a"]
        assert "storage_bucket.a -> bucket_policy.b -> storage_bucket.a" in str(err)

    def test_unknown_reference_with_attribute(self):
        err = UnknownReference("dns_record.www", "cdn_distribution.site", "nope")
        assert "cdn_distribution.site.nope" in str(err)
        assert err.details == {"source": "dns_record.www", "target": "cdn_distribution.site"}

    def test_transient_flag(self):
        assert TransientProviderError("throttled").transient is True
        assert PermanentProviderError("denied").transient is False
        assert isinstance(ResourceNotFound("certificate", "arn:1"), ProviderError)

    def test_condition_timeout_message(self):
        err = AsyncConditionTimeout("certificate.site certificate validation", 30.0)
        assert "30s" in str(err)
        assert err.description == "certificate.site certificate validation"

    def test_parse_error_hierarchy(self):
        assert issubclass(SchemaViolation, ParseError)
        assert issubclass(DuplicateAddress, ParseError)

    def test_partial_apply_error_summarises_result(self):
        collector = ResultCollector()
        collector.record(
            ChangeSetEntry("storage_bucket.a", "storage_bucket", ChangeAction.create, "new"),
            Outcome.failed,
            PermanentProviderError("denied"),
        )
        collector.record(
            ChangeSetEntry("bucket_policy.a", "bucket_policy", ChangeAction.create, "new"),
            Outcome.blocked,
        )
        err = PartialApplyError(collector.finalize(1.0))
        assert err.exit_code == ExitCode.PARTIAL_FAILURE
        assert err.details == {"failed": ["storage_bucket.a"], "blocked": ["bucket_policy.a"]}

    def test_format_error_message(self):
        assert "State is locked by ci:42" in format_error_message(StateLockError("ci:42"))


class TestMainWithErrorHandling:
    """Tests for the main_with_error_handling decorator."""

    def test_success_passthrough(self):
        @main_with_error_handling(log_errors=False)
        def command():
            return 0

        assert command() == 0

    def test_sitelayer_error_exit_code(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise StateLockError("other:1")

        assert command() == ExitCode.BLOCKED

    def test_keyboard_interrupt(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise KeyboardInterrupt

        assert command() == ExitCode.INTERRUPTED

    def test_unknown_error(self):
        @main_with_error_handling(log_errors=False)
        def command():
            raise RuntimeError("boom")

        assert command() == ExitCode.UNKNOWN_ERROR
