"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def write_policy(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    """Write a policy mapping to a YAML file and return its path."""

    def write(data: dict[str, Any], name: str = "policy.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return write


@pytest.fixture
def east_us_policy() -> dict[str, Any]:
    """Policy mapping East US to nsg-eastus in rg-network."""
    return {
        "regions": [
            {
                "region": "East US",
                "networkSecurityGroup": {"name": "nsg-eastus", "resourceGroup": "rg-network"},
            }
        ]
    }
