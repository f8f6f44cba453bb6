"""Tests for the structured error hierarchy."""

from historian.lib.errors import (
    ConfigurationError,
    ExtractionError,
    InvariantViolationError,
    LateArrivalError,
    MissingKeyError,
    PipelineError,
    RecordError,
    StaleWatermarkError,
)


class TestPipelineError:
    """Tests for the base PipelineError."""

    def test_message_only(self):
        """A bare message is the whole string form."""
        err = PipelineError("boom")

        assert str(err) == "boom"
        assert err.details == {}

    def test_context_prefix_and_details(self):
        """System and entity prefix the message; details are listed."""
        err = PipelineError("failed", system="erp", entity="products", details={"rows": 3})

        text = str(err)
        assert text.startswith("[erp.products] failed")
        assert "rows: 3" in text

    def test_to_dict(self):
        """to_dict carries the class name for structured logs."""
        err = ExtractionError("no file", source_path="/x.csv", cause=OSError("gone"))

        data = err.to_dict()
        assert data["error_type"] == "ExtractionError"
        assert data["details"]["source_path"] == "/x.csv"
        assert data["details"]["cause_type"] == "OSError"


class TestRecordErrors:
    """Tests for record-scoped errors."""

    def test_record_errors_are_pipeline_errors(self):
        """Record errors can be caught as PipelineError."""
        assert issubclass(MissingKeyError, RecordError)
        assert issubclass(RecordError, PipelineError)

    def test_reasons(self):
        """Each record error names its quarantine reason."""
        assert MissingKeyError("x").reason == "missing_key"
        assert LateArrivalError("x").reason == "late_arrival"
        assert InvariantViolationError("x").reason == "invariant_violation"

    def test_missing_key_lists_fields(self):
        """Missing fields end up in details."""
        err = MissingKeyError("no key", missing_fields=["region", "id"], natural_key=None)

        assert err.details["missing_fields"] == "region, id"

    def test_late_arrival_has_suggestion(self):
        """Late arrivals suggest an out-of-band backfill."""
        err = LateArrivalError("late", natural_key="P1", batch_id="b1")

        assert err.suggestion is not None
        assert err.details["natural_key"] == "P1"
        assert err.details["batch_id"] == "b1"


class TestStaleWatermarkError:
    """Tests for StaleWatermarkError."""

    def test_positions_in_details(self):
        """Expected and current positions are reported."""
        err = StaleWatermarkError("stale", expected=1, current=2, batch_id="b1")

        assert err.expected == 1
        assert err.current == 2
        assert err.details["expected_position"] == "1"
        assert err.details["current_position"] == "2"


class TestConfigurationError:
    """Tests for ConfigurationError."""

    def test_issues_listed_in_message(self):
        """All issues appear in the message."""
        err = ConfigurationError("bad config", issues=["name is required", "entity is required"])

        assert "name is required" in str(err)
        assert "entity is required" in str(err)
        assert err.details["issue_count"] == 2
