# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from proxynode.config import (
    CollectorConfig,
    HostConfig,
    InstancesConfig,
    MeteringConfig,
)
from proxynode.logging import SecretFilter
from proxynode.registry import InstanceRegistry
from proxynode.types import ProvisionRequest


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep registered log secrets from leaking between tests."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def host_config() -> HostConfig:
    """Host config without sudo and without a persist command."""
    return HostConfig(use_sudo=False, persist_command=())


@pytest.fixture
def instances_config(tmp_path: Path) -> InstancesConfig:
    return InstancesConfig(data_dir=tmp_path / "data")


@pytest.fixture
def metering_config() -> MeteringConfig:
    return MeteringConfig(interval=0.05, fetch_timeout=2.0, max_workers=4)


@pytest.fixture
def collector_config() -> CollectorConfig:
    return CollectorConfig(
        url="https://collector.example.com", api_key="collector-key-123456"
    )


@pytest.fixture
def registry(tmp_path: Path) -> InstanceRegistry:
    return InstanceRegistry(tmp_path / "data" / "instances.json")


@pytest.fixture
def mock_adapter() -> MagicMock:
    """Runtime adapter whose every call succeeds."""
    adapter = MagicMock()
    adapter.create_container.return_value = "abc123def4567890"
    adapter.get_status.return_value = "running"
    return adapter


@pytest.fixture
def provision_request() -> ProvisionRequest:
    return ProvisionRequest(
        instance_id=42,
        certificate_key=(
            "-----BEGIN CERTIFICATE-----\n"
            "MIIBszCCAVmgAwIBAgIUY2VydGlmaWNhdGVib2R5\n"
            "-----END CERTIFICATE-----\n"
        ),
        image_name="gozargah/marzban-node:latest",
        customer_id=7,
        inbound_port=20042,
        xray_port=21042,
        api_port=22042,
    )
