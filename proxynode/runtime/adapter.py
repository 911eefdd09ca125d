# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Runtime adapter: the one entry point to the engine and the host.

Nothing else in the agent talks to the container engine or runs a
privileged command.  The adapter holds no state of its own; it routes
each verb to ``ContainerEngine`` or ``HostCommands`` and owns the choice
of traffic counter source.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from proxynode.config import MeteringConfig, ServerConfig
from proxynode.errors import StatsError
from proxynode.runtime.engine import ContainerEngine
from proxynode.runtime.host import HostCommands
from proxynode.types import TrafficSnapshot


logger = logging.getLogger(__name__)

PROC_NET_DEV = "/proc/net/dev"

# Column of transmitted bytes in a /proc/net/dev row (after the colon).
_PROC_TX_COLUMN = 8


def parse_proc_net_dev(text: str) -> TrafficSnapshot:
    """Sum RX/TX bytes of all non-loopback interfaces in /proc/net/dev.

    Raises:
        StatsError: If no interface row can be parsed.
    """
    rx = 0
    tx = 0
    found = False
    for line in text.splitlines():
        name, sep, counters = line.partition(":")
        name = name.strip()
        if not sep or not name or "|" in name:
            continue
        if name == "lo":
            continue
        fields = counters.split()
        if len(fields) <= _PROC_TX_COLUMN:
            raise StatsError(f"Malformed /proc/net/dev row: {line.strip()!r}")
        try:
            rx += int(fields[0])
            tx += int(fields[_PROC_TX_COLUMN])
        except ValueError as e:
            raise StatsError(
                f"Malformed /proc/net/dev row: {line.strip()!r}"
            ) from e
        found = True
    if not found:
        raise StatsError("No network interfaces in /proc/net/dev")
    return TrafficSnapshot(total_bytes_in=rx, total_bytes_out=tx)


def parse_sidecar_payload(text: str) -> TrafficSnapshot:
    """Parse the sidecar's JSON ``{"in": int, "out": int}`` output.

    Raises:
        StatsError: On invalid JSON or a payload that breaks the schema.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise StatsError(f"Sidecar returned invalid JSON: {e}") from e
    return TrafficSnapshot.from_payload(payload)


class RuntimeAdapter:
    """Lifecycle, stream, counter and host operations behind one façade."""

    def __init__(
        self,
        engine: ContainerEngine,
        host: HostCommands,
        metering: MeteringConfig | None = None,
    ) -> None:
        self._engine = engine
        self._host = host
        self._metering = metering or MeteringConfig()

    @classmethod
    def from_config(cls, config: ServerConfig) -> RuntimeAdapter:
        """Build an adapter wired to the configured engine and host."""
        return cls(
            ContainerEngine(config.engine),
            HostCommands(config.host),
            config.metering,
        )

    @property
    def engine(self) -> ContainerEngine:
        return self._engine

    @property
    def host(self) -> HostCommands:
        return self._host

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    def create_container(
        self,
        image: str,
        name: str,
        port_mappings: Sequence[str],
        env: Mapping[str, str],
        volume_mappings: Sequence[str],
        command: Sequence[str] | None = None,
        network_mode: str | None = None,
    ) -> str:
        """Create a container and return its runtime id."""
        return self._engine.create_container(
            image,
            name,
            port_mappings,
            env,
            volume_mappings,
            command=command,
            network_mode=network_mode,
        )

    def start(self, container_id: str) -> None:
        self._engine.start(container_id)

    def stop(self, container_id: str) -> None:
        self._engine.stop(container_id)

    def pause(self, container_id: str) -> None:
        self._engine.pause(container_id)

    def unpause(self, container_id: str) -> None:
        self._engine.unpause(container_id)

    def delete(self, container_id: str) -> None:
        self._engine.delete(container_id)

    def get_status(self, container_id: str) -> str:
        return self._engine.get_status(container_id)

    def get_logs(self, container_id: str) -> str:
        return self._engine.get_logs(container_id)

    def exec_in_container(
        self, container_id: str, argv: Sequence[str]
    ) -> str:
        return self._engine.exec(container_id, argv)

    def get_stats(self, container_id: str) -> TrafficSnapshot:
        return self._engine.get_stats(container_id)

    # ------------------------------------------------------------------
    # Traffic counters
    # ------------------------------------------------------------------

    def get_traffic(
        self, container_name: str, source: str | None = None
    ) -> TrafficSnapshot:
        """Read cumulative traffic of a container.

        Args:
            container_name: Container to read.
            source: ``engine`` (stats API), ``procfs`` (kernel counters
                read inside the container) or ``sidecar`` (metrics
                endpoint inside the container's network namespace).
                Defaults to the configured source.

        Raises:
            StatsError: If the counters are missing or malformed.
            RuntimeAdapterError: If the engine or exec call fails.
        """
        source = source or self._metering.traffic_source
        if source == "engine":
            return self._engine.get_stats(container_name)
        if source == "procfs":
            text = self._engine.exec(container_name, ["cat", PROC_NET_DEV])
            return parse_proc_net_dev(text)
        if source == "sidecar":
            text = self._engine.exec(
                container_name, list(self._metering.sidecar_command)
            )
            return parse_sidecar_payload(text)
        raise ValueError(f"Unknown traffic source: {source}")

    # ------------------------------------------------------------------
    # Host operations
    # ------------------------------------------------------------------

    def create_host_directory(self, path: Path | str) -> None:
        self._host.create_directory(path)

    def remove_host_directory(self, path: Path | str) -> None:
        self._host.remove_directory(path)

    def write_host_file(self, path: Path | str, content: str) -> None:
        self._host.write_file(path, content)

    def open_firewall_port(self, port: int, proto: str = "tcp") -> None:
        self._host.open_firewall_port(port, proto)

    def close_firewall_port(self, port: int, proto: str = "tcp") -> None:
        self._host.close_firewall_port(port, proto)

    def add_traffic_counting_rule(self, port: int) -> None:
        self._host.add_traffic_counting_rule(port)

    def remove_traffic_counting_rule(self, port: int) -> None:
        self._host.remove_traffic_counting_rule(port)

    def read_traffic_counters(self, port: int) -> TrafficSnapshot:
        """Byte counters of a port's host accounting rules."""
        return self._host.read_traffic_counters(port)
