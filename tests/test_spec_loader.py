"""Tests for deployment spec loading."""

from pathlib import Path

import pytest
import yaml
from factories import make_spec_data

from controlplane.config import MAX_SPEC_FILE_SIZE_BYTES
from controlplane.errors import SpecValidationError
from controlplane.spec_loader import SPEC_API_VERSION, SpecLoadError, load_spec, parse_spec


def write_spec(tmp_path: Path, data: object, name: str = "deployment.yaml") -> Path:
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestParseSpec:
    """Tests for parse_spec."""

    def test_flat_form(self) -> None:
        """Test that a bare spec mapping is accepted."""
        spec = parse_spec(make_spec_data())
        assert spec.project_id == "shop"

    def test_envelope_form(self) -> None:
        """Test that the apiVersion/kind/spec envelope is unwrapped."""
        data = {
            "apiVersion": SPEC_API_VERSION,
            "kind": "Deployment",
            "metadata": {"name": "shop"},
            "spec": make_spec_data(),
        }
        assert parse_spec(data).app_ids == ["web", "ios"]

    def test_wrong_kind(self) -> None:
        """Test that other envelope kinds are rejected."""
        data = {"apiVersion": SPEC_API_VERSION, "kind": "Pipeline", "spec": make_spec_data()}

        with pytest.raises(SpecLoadError, match="Unsupported kind"):
            parse_spec(data)

    def test_not_a_mapping(self) -> None:
        """Test that lists and scalars are rejected."""
        with pytest.raises(SpecLoadError, match="must be a mapping"):
            parse_spec(["projectId"])

    def test_validation_errors_listed(self) -> None:
        """Test that each failing field is named."""
        data = make_spec_data()
        del data["warehouse"]

        with pytest.raises(SpecLoadError) as exc_info:
            parse_spec(data, source="shop.yaml")

        message = str(exc_info.value)
        assert "shop.yaml" in message
        assert "warehouse" in message

    def test_load_error_is_validation_error(self) -> None:
        """Test that callers can catch the generic validation error."""
        with pytest.raises(SpecValidationError):
            parse_spec({})


class TestLoadSpec:
    """Tests for load_spec."""

    def test_load_valid_file(self, tmp_path: Path) -> None:
        """Test loading a valid YAML file."""
        spec = load_spec(write_spec(tmp_path, make_spec_data()))

        assert spec.project_id == "shop"
        assert spec.warehouse.workgroup_name == "analytics-wg"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file is reported."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_spec(tmp_path / "absent.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that files above the size limit are not parsed."""
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_spec(path)

    def test_invalid_utf8(self, tmp_path: Path) -> None:
        """Test that a file that is not UTF-8 is reported, not raised raw."""
        path = tmp_path / "latin.yaml"
        path.write_bytes(b"projectId: \xff\xfe shop\n")

        with pytest.raises(SpecLoadError, match="Failed to read spec file"):
            load_spec(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is reported."""
        path = tmp_path / "broken.yaml"
        path.write_text("projectId: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_spec(path)

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test that an empty file is not a spec."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        with pytest.raises(SpecLoadError, match="must be a mapping"):
            load_spec(path)
