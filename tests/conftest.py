"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock and factories imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture
def spec_data() -> dict[str, Any]:
    from factories import make_spec_data

    return make_spec_data()


@pytest.fixture
def aws():
    from aws_mock import MockAwsContext

    return MockAwsContext()
