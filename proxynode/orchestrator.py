# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Provisioning orchestrator for tenant proxy instances.

Sequences runtime adapter calls to stand an instance up or tear it down
and keeps the instance registry consistent with the running containers.

Provisioning is all-or-nothing from the registry's point of view: the
record is written only after the container has started, so a failed
provision never leaves a record behind.  Firewall ports opened before a
failure stay open; a later deprovision (or a retried provision, which is
idempotent) converges them.

Deprovisioning is best-effort: every step runs even if an earlier one
failed, and the registry record is removed last regardless.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from proxynode.config import InstancesConfig
from proxynode.errors import (
    InstanceNotFoundError,
    RegistryError,
    ValidationError,
)
from proxynode.logging import SecretFilter
from proxynode.registry import InstanceRegistry
from proxynode.runtime.adapter import RuntimeAdapter
from proxynode.types import (
    InstanceRecord,
    InstanceState,
    ProvisionRequest,
    ProvisionResult,
    TrafficSnapshot,
)


logger = logging.getLogger(__name__)

# Paths and ports inside the proxy image.
CONTAINER_SSL_DIR = "/var/lib/marzban-node/ssl"
CERT_FILENAME = "node.pem"
XRAY_CONTAINER_PORT = 62051
API_CONTAINER_PORT = 62050


class Provisioner:
    """Provisions and deprovisions tenant proxy containers.

    Callers must not run overlapping provision/deprovision calls for the
    same instance id; different instances may be handled concurrently.

    Args:
        adapter: Runtime adapter for engine and host operations.
        registry: Instance registry.
        config: Instance layout settings.
        network_mode: Network for new containers (engine default if None).
    """

    def __init__(
        self,
        adapter: RuntimeAdapter,
        registry: InstanceRegistry,
        config: InstancesConfig | None = None,
        network_mode: str | None = None,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._config = config or InstancesConfig()
        self._network_mode = network_mode

    def container_name(self, instance_id: int) -> str:
        """Deterministic container name of an instance."""
        return f"{self._config.container_prefix}{instance_id}"

    def instance_dir(self, instance_id: int) -> Path:
        """Host directory holding an instance's files."""
        return self._config.data_dir / str(instance_id)

    # ------------------------------------------------------------------
    # Provision / deprovision
    # ------------------------------------------------------------------

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        """Stand up one instance.

        Never raises: every failure is returned as a result with
        ``success=False`` and an error message.

        Args:
            request: What to provision.

        Returns:
            The outcome, including the runtime id on success.
        """
        instance_id = request.instance_id
        logger.info("Provision request for instance %d", instance_id)

        try:
            request.validate()
        except ValidationError as e:
            logger.warning("Rejected provision of %d: %s", instance_id, e)
            return self._failed(request, str(e))

        SecretFilter.register_secret(request.certificate_key)
        try:
            runtime_id = self._provision(request)
        except Exception as e:
            logger.error(
                "Provisioning instance %d failed: %s",
                instance_id,
                e,
                exc_info=True,
            )
            return self._failed(request, str(e))

        logger.info(
            "Instance %d provisioned (container %s)",
            instance_id,
            runtime_id[:12],
        )
        return ProvisionResult(
            instance_id=instance_id,
            success=True,
            state=InstanceState.PROVISIONED,
            container_runtime_id=runtime_id,
            inbound_port=request.inbound_port,
            xray_port=request.xray_port,
            api_port=request.api_port,
        )

    def _provision(self, request: ProvisionRequest) -> str:
        """Run the provisioning steps; any exception aborts."""
        adapter = self._adapter
        for port in (request.inbound_port, request.xray_port, request.api_port):
            adapter.open_firewall_port(port)
        adapter.add_traffic_counting_rule(request.inbound_port)

        ssl_dir = self.instance_dir(request.instance_id) / "ssl"
        adapter.create_host_directory(ssl_dir)
        adapter.write_host_file(
            ssl_dir / CERT_FILENAME, request.certificate_key
        )

        name = self.container_name(request.instance_id)
        runtime_id = adapter.create_container(
            request.image_name,
            name,
            port_mappings=[
                f"{request.inbound_port}:{request.inbound_port}",
                f"{request.xray_port}:{XRAY_CONTAINER_PORT}",
                f"{request.api_port}:{API_CONTAINER_PORT}",
            ],
            env={
                "SERVICE_PROTOCOL": "rest",
                "SSL_CLIENT_CERT_FILE": f"{CONTAINER_SSL_DIR}/{CERT_FILENAME}",
            },
            volume_mappings=[f"{ssl_dir}:{CONTAINER_SSL_DIR}:ro"],
            network_mode=self._network_mode,
        )
        adapter.start(runtime_id)

        record = InstanceRecord(
            id=request.instance_id, inbound_port=request.inbound_port
        )
        if not self._registry.add(record):
            self._reregister(record)
        return runtime_id

    def _reregister(self, record: InstanceRecord) -> None:
        """Point an existing record at the new inbound port.

        The stored counters are kept.  Accounting for the previous port is
        dropped best-effort, since that port no longer reaches the
        container.
        """
        existing = self._registry.get(record.id)
        if existing is None:
            # Removed since the failed add.
            self._registry.add(record)
            return
        if existing.inbound_port == record.inbound_port:
            logger.info(
                "Instance %d was already registered, keeping its counters",
                record.id,
            )
            return

        old_port = existing.inbound_port
        self._registry.update(
            replace(existing, inbound_port=record.inbound_port)
        )
        logger.info(
            "Instance %d moved from inbound port %d to %d",
            record.id,
            old_port,
            record.inbound_port,
        )
        adapter = self._adapter
        for label, func in (
            ("remove counting rule", adapter.remove_traffic_counting_rule),
            ("close firewall port", adapter.close_firewall_port),
        ):
            try:
                func(old_port)
            except Exception as e:
                logger.warning(
                    "Instance %d: %s on old port %d failed: %s",
                    record.id,
                    label,
                    old_port,
                    e,
                )

    @staticmethod
    def _failed(request: ProvisionRequest, message: str) -> ProvisionResult:
        return ProvisionResult(
            instance_id=request.instance_id,
            success=False,
            state=InstanceState.FAILED,
            error_message=message,
        )

    def deprovision(self, instance_id: int) -> str:
        """Tear an instance down, best-effort.

        Every cleanup step is attempted even if an earlier one failed.
        The registry record is removed last, whatever happened before.

        Returns:
            Summary message naming the steps that failed, if any.

        Raises:
            RegistryError: If the registry cannot be read or written.  The
                container cleanup steps have run by then.
        """
        name = self.container_name(instance_id)
        logger.info("Deprovisioning instance %d (%s)", instance_id, name)

        failed: list[str] = []

        try:
            record = self._registry.get(instance_id)
        except RegistryError as e:
            # The final remove raises it again once the container is gone.
            logger.warning(
                "Deprovision of %d: registry lookup failed: %s",
                instance_id,
                e,
            )
            record = None
        else:
            if record is None:
                logger.info(
                    "Instance %d not registered, cleaning up container only",
                    instance_id,
                )

        def step(label: str, func: Callable[..., object], *args) -> None:
            try:
                func(*args)
            except Exception as e:
                failed.append(label)
                logger.warning(
                    "Deprovision of %d: %s failed: %s", instance_id, label, e
                )

        adapter = self._adapter
        step("stop", adapter.stop, name)
        step("delete", adapter.delete, name)
        if record is not None:
            step(
                "remove counting rule",
                adapter.remove_traffic_counting_rule,
                record.inbound_port,
            )
            step(
                "close firewall port",
                adapter.close_firewall_port,
                record.inbound_port,
            )
        step(
            "remove directory",
            adapter.remove_host_directory,
            self.instance_dir(instance_id),
        )

        self._registry.remove(instance_id)

        if failed:
            return (
                f"Instance {instance_id} removed with errors: "
                f"{', '.join(failed)}"
            )
        return f"Instance {instance_id} removed"

    # ------------------------------------------------------------------
    # Pass-through operations
    # ------------------------------------------------------------------

    def get_status(self, instance_id: int) -> str:
        """Engine state of the instance's container (``unknown`` if n/a)."""
        return self._adapter.get_status(self.container_name(instance_id))

    def get_logs(self, instance_id: int) -> str:
        return self._adapter.get_logs(self.container_name(instance_id))

    def pause(self, instance_id: int) -> str:
        name = self.container_name(instance_id)
        self._adapter.pause(name)
        return f"{name} paused"

    def resume(self, instance_id: int) -> str:
        name = self.container_name(instance_id)
        self._adapter.unpause(name)
        return f"{name} unpaused"

    def get_instance_traffic(self, instance_id: int) -> TrafficSnapshot:
        """Cumulative traffic of the instance's container."""
        return self._adapter.get_traffic(self.container_name(instance_id))

    def get_port_counters(self, instance_id: int) -> TrafficSnapshot:
        """Byte counters of the instance's host accounting rules.

        Raises:
            InstanceNotFoundError: If the instance is not registered.
        """
        record = self._registry.get(instance_id)
        if record is None:
            raise InstanceNotFoundError(
                f"Instance {instance_id} is not registered"
            )
        return self._adapter.read_traffic_counters(record.inbound_port)
