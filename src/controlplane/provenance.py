"""Lifecycle provenance tracking for audit.

Every lifecycle request is stamped with a provenance record answering:
- "Who asked for this change, and when?"
- "What did the change-set contain?"
- "Which version of the control plane executed it, and how did it end?"

Records are emitted as structured log entries.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONTROL_PLANE_VERSION = os.environ.get("CONTROL_PLANE_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of a change-set for provenance tracking."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    replace_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total changes that reach a provisioner."""
        return self.create_count + self.update_count + self.delete_count + self.replace_count

    @classmethod
    def from_summary(cls, summary: dict[str, int]) -> ChangeProvenanceSummary:
        return cls(
            create_count=summary.get("create", 0),
            update_count=summary.get("update", 0),
            delete_count=summary.get("delete", 0),
            replace_count=summary.get("replace", 0),
        )


@dataclass
class LifecycleProvenance:
    """Provenance record of one lifecycle request."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operation: str = ""
    deployment_id: str = ""
    project_id: str = ""
    operator: str = ""
    control_plane_version: str = CONTROL_PLANE_VERSION
    instance_id: str = ""

    # Outcome
    version: int = 0
    status: str = ""
    replaced_kinds: list[str] = field(default_factory=list)
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    deadline_exceeded: bool = False

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None
    failed_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records as structured log entries."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        operation: str,
        deployment_id: str = "",
        project_id: str = "",
        operator: str = "",
    ) -> LifecycleProvenance:
        """Create a new provenance record for a lifecycle request."""
        return LifecycleProvenance(
            operation=operation,
            deployment_id=deployment_id,
            project_id=project_id,
            operator=operator,
            instance_id=self._instance_id,
        )

    def log_provenance(self, provenance: LifecycleProvenance) -> None:
        """Log a completed provenance record.

        Failed requests log at ERROR, requests cut short by the deadline at
        WARNING, everything else at INFO.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.deadline_exceeded:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Lifecycle provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flattened for querying
                "operation": provenance.operation,
                "deployment_id": provenance.deployment_id,
                "status": provenance.status,
                "changes": provenance.change_summary.total_significant,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
