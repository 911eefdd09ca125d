# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Type definitions shared across the node agent.

Provides the registry record, the provision request/result pair, the
traffic snapshot and the usage report submitted to the collector.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from proxynode.errors import StatsError, ValidationError


#: Highest valid TCP/UDP port.
MAX_PORT = 65535


def _is_int(value: object) -> bool:
    """Return True for real integers (bool is rejected)."""
    return isinstance(value, int) and not isinstance(value, bool)


class InstanceState(Enum):
    """Lifecycle of a provisioned instance as seen by the orchestrator."""

    REQUESTED = "requested"
    PROVISIONED = "provisioned"
    FAILED = "failed"
    DEPROVISIONING = "deprovisioning"
    REMOVED = "removed"


@dataclass(frozen=True)
class InstanceRecord:
    """Registry entry for one provisioned instance.

    Attributes:
        id: Stable instance identifier.
        inbound_port: Host port carrying the tenant's proxy traffic.
        last_total_rx: Last successfully observed cumulative RX bytes.
        last_total_tx: Last successfully observed cumulative TX bytes.
    """

    id: int
    inbound_port: int
    last_total_rx: int = 0
    last_total_tx: int = 0

    def to_dict(self) -> dict[str, int]:
        """Serialize to the on-disk JSON form."""
        return {
            "id": self.id,
            "inboundPort": self.inbound_port,
            "lastTotalRx": self.last_total_rx,
            "lastTotalTx": self.last_total_tx,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstanceRecord:
        """Deserialize from the on-disk JSON form.

        Raises:
            ValueError: If a required field is missing or not an integer.
        """
        values: dict[str, int] = {}
        for key, attr, default in (
            ("id", "id", None),
            ("inboundPort", "inbound_port", None),
            ("lastTotalRx", "last_total_rx", 0),
            ("lastTotalTx", "last_total_tx", 0),
        ):
            value = data.get(key, default)
            if not _is_int(value):
                raise ValueError(f"Invalid registry field {key!r}: {value!r}")
            values[attr] = value
        return cls(**values)


@dataclass(frozen=True)
class ProvisionRequest:
    """Request to stand up one tenant proxy container.

    Attributes:
        instance_id: Tenant-facing instance identifier.
        certificate_key: PEM content the proxy uses for its client TLS.
        image_name: Proxy image reference.
        customer_id: Owning customer.
        inbound_port: Host port for tenant traffic (metered).
        xray_port: Host port mapped to the proxy's service port.
        api_port: Host port mapped to the proxy's control API port.
    """

    instance_id: int
    certificate_key: str
    image_name: str
    customer_id: int
    inbound_port: int
    xray_port: int
    api_port: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvisionRequest:
        """Build a request from its camelCase JSON form.

        Type problems are reported as validation errors so the HTTP layer
        can answer 400 without touching the host.

        Raises:
            ValidationError: If a field is missing or has the wrong type.
        """
        problems: list[str] = []

        def _int(key: str) -> int:
            value = data.get(key)
            if not _is_int(value):
                problems.append(f"{key} must be an integer")
                return 0
            return value

        def _str(key: str) -> str:
            value = data.get(key)
            if value is None:
                return ""
            if not isinstance(value, str):
                problems.append(f"{key} must be a string")
                return ""
            return value

        request = cls(
            instance_id=_int("instanceId"),
            certificate_key=_str("certificateKey"),
            image_name=_str("imageName"),
            customer_id=_int("customerId"),
            inbound_port=_int("inboundPort"),
            xray_port=_int("xrayPort"),
            api_port=_int("apiPort"),
        )
        if problems:
            raise ValidationError(problems)
        return request

    def validate(self) -> None:
        """Check the request before any side effect.

        Raises:
            ValidationError: Listing every problem found.
        """
        problems: list[str] = []
        if self.instance_id <= 0:
            problems.append("instanceId must be > 0")
        if self.customer_id <= 0:
            problems.append("customerId must be > 0")
        if not self.image_name.strip():
            problems.append("imageName is required")
        if not self.certificate_key.strip():
            problems.append("certificateKey is required")

        ports = {
            "inboundPort": self.inbound_port,
            "xrayPort": self.xray_port,
            "apiPort": self.api_port,
        }
        for name, port in ports.items():
            if port <= 0:
                problems.append(f"{name} must be > 0")
            elif port > MAX_PORT:
                problems.append(f"{name} must be <= {MAX_PORT}")
        if len(set(ports.values())) != len(ports):
            problems.append("ports must not conflict with each other")

        if problems:
            raise ValidationError(problems)


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of a provision call, always returned, never persisted.

    Attributes:
        instance_id: Instance the request was for.
        success: Whether the instance is now running and registered.
        state: Final lifecycle state (PROVISIONED or FAILED).
        error_message: Failure description when ``success`` is False.
        container_runtime_id: Engine id of the started container.
        user_uuid: Proxy user id, when the image exposes one.
        inbound_port: Assigned inbound host port.
        xray_port: Assigned service host port.
        api_port: Assigned control API host port.
    """

    instance_id: int
    success: bool
    state: InstanceState
    error_message: str | None = None
    container_runtime_id: str | None = None
    user_uuid: str | None = None
    inbound_port: int | None = None
    xray_port: int | None = None
    api_port: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON form used by the HTTP API."""
        return {
            "instanceId": self.instance_id,
            "success": self.success,
            "state": self.state.value,
            "errorMessage": self.error_message,
            "containerRuntimeId": self.container_runtime_id,
            "userUuid": self.user_uuid,
            "inboundPort": self.inbound_port,
            "xrayPort": self.xray_port,
            "apiPort": self.api_port,
        }


@dataclass(frozen=True)
class TrafficSnapshot:
    """Cumulative byte counters of one running container.

    Monotonically non-decreasing for the lifetime of a container; drops to
    near zero when the container is recreated.

    Attributes:
        total_bytes_in: Cumulative received bytes.
        total_bytes_out: Cumulative transmitted bytes.
    """

    total_bytes_in: int
    total_bytes_out: int

    def __post_init__(self) -> None:
        if not _is_int(self.total_bytes_in) or not _is_int(
            self.total_bytes_out
        ):
            raise StatsError(
                f"Traffic counters must be integers: "
                f"in={self.total_bytes_in!r}, out={self.total_bytes_out!r}"
            )
        if self.total_bytes_in < 0 or self.total_bytes_out < 0:
            raise StatsError(
                f"Traffic counters must be non-negative: "
                f"in={self.total_bytes_in}, out={self.total_bytes_out}"
            )

    @classmethod
    def from_payload(cls, payload: object) -> TrafficSnapshot:
        """Parse the sidecar's ``{"in": int, "out": int}`` payload.

        Raises:
            StatsError: If the payload is not a mapping with both integer
                fields.
        """
        if not isinstance(payload, dict):
            raise StatsError(
                f"Traffic payload must be an object, got "
                f"{type(payload).__name__}"
            )
        missing = [key for key in ("in", "out") if key not in payload]
        if missing:
            raise StatsError(
                f"Traffic payload missing field(s): {', '.join(missing)}"
            )
        return cls(total_bytes_in=payload["in"], total_bytes_out=payload["out"])

    def to_dict(self) -> dict[str, int]:
        """Serialize using the same field names as ``from_payload``."""
        return {"in": self.total_bytes_in, "out": self.total_bytes_out}


@dataclass(frozen=True)
class InstanceUsage:
    """Usage of one instance during one metering cycle."""

    instance_id: int
    total_usage_in_bytes: int


@dataclass
class UsageReport:
    """Ordered per-instance usage for one metering cycle."""

    usages: list[InstanceUsage] = field(default_factory=list)

    def add(self, instance_id: int, total_usage_in_bytes: int) -> None:
        """Append usage for an instance."""
        self.usages.append(InstanceUsage(instance_id, total_usage_in_bytes))

    def is_empty(self) -> bool:
        """Return True if nothing was recorded this cycle."""
        return not self.usages

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the collector's JSON body."""
        return {
            "usages": [
                {
                    "instanceId": usage.instance_id,
                    "totalUsageInBytes": usage.total_usage_in_bytes,
                }
                for usage in self.usages
            ]
        }
