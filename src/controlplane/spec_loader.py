"""Deployment spec loading with validation.

All file operations enforce a size limit. Validation is performed at the
boundary so that a malformed configuration is rejected before any external
call is issued.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .errors import SpecValidationError
from .models import DeploymentSpec

logger = logging.getLogger(__name__)

SPEC_API_VERSION = "controlplane/v1"
SPEC_KIND = "Deployment"


class SpecLoadError(SpecValidationError):
    """Raised when spec loading or validation fails."""

    pass


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        lines.append(f"  - {loc}: {detail['msg']}")
    return "\n".join(lines)


def parse_spec(data: Any, source: str = "<input>") -> DeploymentSpec:
    """Validate a deployment spec given as a mapping.

    Accepts both the flat form and the envelope form with apiVersion, kind,
    metadata and spec sections.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(data, dict):
        raise SpecLoadError(f"Spec must be a mapping: {source}")

    if "apiVersion" in data and "spec" in data:
        if data.get("kind", SPEC_KIND) != SPEC_KIND:
            raise SpecLoadError(f"Unsupported kind '{data.get('kind')}' in {source}, expected {SPEC_KIND}")
        spec_data = data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = data

    try:
        return DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{_format_validation_error(e)}") from e


def load_spec(spec_path: Path) -> DeploymentSpec:
    """Load and validate a deployment spec from YAML.

    Args:
        spec_path: Path of the spec file.

    Returns:
        Validated spec.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, str(spec_path))
    logger.info("Loaded spec for project '%s' from %s", spec.project_id, spec_path)
    return spec
