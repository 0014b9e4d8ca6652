"""Tests for lifecycle provenance tracking."""

from __future__ import annotations

import logging
from datetime import UTC
from unittest.mock import patch

import pytest

from controlplane.provenance import (
    CONTROL_PLANE_VERSION,
    ChangeProvenanceSummary,
    LifecycleProvenance,
    ProvenanceLogger,
    get_provenance_logger,
)


class TestChangeProvenanceSummary:
    """Tests for ChangeProvenanceSummary dataclass."""

    def test_total_significant_empty(self) -> None:
        """Empty summary has zero significant changes."""
        assert ChangeProvenanceSummary().total_significant == 0

    def test_total_significant(self) -> None:
        """Every counted change reaches a provisioner."""
        summary = ChangeProvenanceSummary(create_count=2, update_count=4, delete_count=1, replace_count=1)
        assert summary.total_significant == 8

    def test_from_summary_ignores_unknown_keys(self) -> None:
        """Only change-set actions are counted."""
        summary = ChangeProvenanceSummary.from_summary({"create": 1, "skipped": 5})
        assert summary.total_significant == 1
        assert not hasattr(summary, "skipped_count")

    def test_from_summary(self) -> None:
        """Change-set summaries map onto the counters."""
        summary = ChangeProvenanceSummary.from_summary({"create": 4, "update": 1, "delete": 2, "replace": 3})

        assert summary.create_count == 4
        assert summary.update_count == 1
        assert summary.delete_count == 2
        assert summary.replace_count == 3
        assert summary.total_significant == 10


class TestLifecycleProvenance:
    """Tests for LifecycleProvenance dataclass."""

    def test_default_values(self) -> None:
        """Default provenance has expected values."""
        provenance = LifecycleProvenance()

        assert provenance.control_plane_version == CONTROL_PLANE_VERSION
        assert provenance.timestamp.tzinfo == UTC
        assert provenance.error is None
        assert provenance.deadline_exceeded is False

    def test_to_dict_serializes_timestamp(self) -> None:
        """Timestamps are ISO strings and nested summaries are dicts."""
        provenance = LifecycleProvenance(operation="create", replaced_kinds=["bi-dataset"])

        result = provenance.to_dict()

        assert isinstance(result["timestamp"], str)
        assert result["operation"] == "create"
        assert result["replaced_kinds"] == ["bi-dataset"]
        assert result["change_summary"]["create_count"] == 0


class TestProvenanceLogger:
    """Tests for ProvenanceLogger."""

    def test_create_provenance_stamps_instance(self) -> None:
        """The container instance id is attached to every record."""
        with patch.dict("os.environ", {"CONTAINER_INSTANCE_ID": "task-7"}):
            provenance_logger = ProvenanceLogger()

        provenance = provenance_logger.create_provenance("update", deployment_id="dep1", operator="alice")

        assert provenance.instance_id == "task-7"
        assert provenance.deployment_id == "dep1"
        assert provenance.operator == "alice"

    @pytest.mark.parametrize(
        ("error", "deadline_exceeded", "level"),
        [
            (None, False, logging.INFO),
            (None, True, logging.WARNING),
            ("boom", False, logging.ERROR),
            ("boom", True, logging.ERROR),
        ],
    )
    def test_log_level(
        self, caplog: pytest.LogCaptureFixture, error: str | None, deadline_exceeded: bool, level: int
    ) -> None:
        """Failures log at ERROR and deadline cut-offs at WARNING."""
        provenance = LifecycleProvenance(operation="delete", error=error, deadline_exceeded=deadline_exceeded)

        with caplog.at_level(logging.DEBUG, logger="controlplane.provenance"):
            ProvenanceLogger().log_provenance(provenance)

        [record] = caplog.records
        assert record.levelno == level
        assert record.operation == "delete"
        assert record.provenance["error"] == error

    def test_singleton(self) -> None:
        """The global logger is created once."""
        assert get_provenance_logger() is get_provenance_logger()
