# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP request handlers for the provisioning API.

Handlers map JSON requests onto ``Provisioner`` calls.  Domain errors
propagate to the server's dispatcher, which turns them into status codes.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

from werkzeug.wrappers import Request, Response

from proxynode.errors import ValidationError
from proxynode.orchestrator import Provisioner
from proxynode.registry import InstanceRegistry
from proxynode.types import ProvisionRequest


logger = logging.getLogger(__name__)


def json_response(data: Any, status: int = 200) -> Response:
    """Serialize ``data`` as a JSON response."""
    return Response(
        json.dumps(data),
        status=status,
        content_type="application/json",
    )


class RequestHandlers:
    """Handlers for every API endpoint.

    Args:
        provisioner: Orchestrator the requests are mapped onto.
        registry: Registry listed by ``/api/instances``.
        metering_running: Reports whether the metering loop is alive.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        registry: InstanceRegistry,
        metering_running: Callable[[], bool] | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._registry = registry
        self._metering_running = metering_running

    def handle_provision(self, request: Request) -> Response:
        """Provision an instance from a camelCase JSON body.

        Returns 201 with the result on success, 400 on validation
        failure and 502 with the result when a provisioning step failed.
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError(["request body must be a JSON object"])

        provision_request = ProvisionRequest.from_dict(data)
        provision_request.validate()

        result = self._provisioner.provision(provision_request)
        return json_response(result.to_dict(), 201 if result.success else 502)

    def handle_deprovision(
        self, request: Request, instance_id: int
    ) -> Response:
        message = self._provisioner.deprovision(instance_id)
        return json_response({"instanceId": instance_id, "message": message})

    def handle_status(self, request: Request, instance_id: int) -> Response:
        status = self._provisioner.get_status(instance_id)
        return json_response({"instanceId": instance_id, "status": status})

    def handle_logs(self, request: Request, instance_id: int) -> Response:
        return Response(
            self._provisioner.get_logs(instance_id),
            content_type="text/plain; charset=utf-8",
        )

    def handle_traffic(self, request: Request, instance_id: int) -> Response:
        """Cumulative traffic of an instance.

        ``?source=firewall`` reads the host accounting rule counters
        instead of the container's own counters.
        """
        if request.args.get("source") == "firewall":
            snapshot = self._provisioner.get_port_counters(instance_id)
        else:
            snapshot = self._provisioner.get_instance_traffic(instance_id)
        return json_response({"instanceId": instance_id, **snapshot.to_dict()})

    def handle_pause(self, request: Request, instance_id: int) -> Response:
        message = self._provisioner.pause(instance_id)
        return json_response({"instanceId": instance_id, "message": message})

    def handle_resume(self, request: Request, instance_id: int) -> Response:
        message = self._provisioner.resume(instance_id)
        return json_response({"instanceId": instance_id, "message": message})

    def handle_instances(self, request: Request) -> Response:
        records = self._registry.get_all()
        return json_response([record.to_dict() for record in records])

    def handle_health(self, request: Request) -> Response:
        """Liveness plus a short summary of local state."""
        result: dict[str, Any] = {"status": "ok"}
        try:
            result["instances"] = len(self._registry.get_all())
        except Exception as e:
            logger.warning("Health check could not read registry: %s", e)
            result["status"] = "degraded"
            result["error"] = str(e)
        if self._metering_running is not None:
            result["metering"] = self._metering_running()
        return json_response(result)
