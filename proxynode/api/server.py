# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Provisioning API HTTP server.

A small WSGI application served from a background thread.  The API has
no authentication of its own; bind it to loopback or a private interface.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from werkzeug.wrappers.response import StartResponse

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from proxynode.api.handlers import RequestHandlers, json_response
from proxynode.errors import (
    InstanceNotFoundError,
    RegistryError,
    RuntimeAdapterError,
    ValidationError,
)
from proxynode.orchestrator import Provisioner
from proxynode.registry import InstanceRegistry


logger = logging.getLogger(__name__)

_CONTAINER = "/api/provisioning/container"


class ApiServer:
    """WSGI server for the provisioning API.

    Runs in a background thread.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        registry: InstanceRegistry,
        host: str = "127.0.0.1",
        port: int = 5300,
        metering_running: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            provisioner: Orchestrator behind the endpoints.
            registry: Registry listed by ``/api/instances``.
            host: Host to bind to.
            port: Port to bind to.
            metering_running: Optional liveness probe for ``/health``.
        """
        self.host = host
        self.port = port
        self._server: Any = None
        self._thread: threading.Thread | None = None

        self._handlers = RequestHandlers(
            provisioner=provisioner,
            registry=registry,
            metering_running=metering_running,
        )

        self._url_map = Map(
            [
                Rule(_CONTAINER, endpoint="provision", methods=["POST"]),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>",
                    endpoint="deprovision",
                    methods=["DELETE"],
                ),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>/status",
                    endpoint="status",
                    methods=["GET"],
                ),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>/logs",
                    endpoint="logs",
                    methods=["GET"],
                ),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>/traffic",
                    endpoint="traffic",
                    methods=["GET"],
                ),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>/pause",
                    endpoint="pause",
                    methods=["POST"],
                ),
                Rule(
                    f"{_CONTAINER}/<int:instance_id>/resume",
                    endpoint="resume",
                    methods=["POST"],
                ),
                Rule("/api/instances", endpoint="instances", methods=["GET"]),
                Rule("/health", endpoint="health", methods=["GET"]),
            ]
        )

        self._endpoint_handlers = {
            "provision": self._handlers.handle_provision,
            "deprovision": self._handlers.handle_deprovision,
            "status": self._handlers.handle_status,
            "logs": self._handlers.handle_logs,
            "traffic": self._handlers.handle_traffic,
            "pause": self._handlers.handle_pause,
            "resume": self._handlers.handle_resume,
            "instances": self._handlers.handle_instances,
            "health": self._handlers.handle_health,
        }

    def start(self) -> None:
        """Start the API server in a background thread."""
        self._server = make_server(
            self.host,
            self.port,
            self.wsgi_app,
            threaded=True,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="ApiServer",
        )
        self._thread.start()
        logger.info(
            "API server started at http://%s:%d/", self.host, self.port
        )

    def stop(self) -> None:
        """Stop the API server."""
        if self._server:
            self._server.shutdown()
            self._server = None
            logger.info("API server stopped")

    def wsgi_app(
        self,
        environ: dict[str, Any],
        start_response: "StartResponse",
    ) -> Iterable[bytes]:
        """WSGI application entry point."""
        request = Request(environ)
        response = self._dispatch(request)
        return response(environ, start_response)

    def _dispatch(self, request: Request) -> Response:
        """Route a request and map domain errors to status codes."""
        adapter = self._url_map.bind_to_environ(request.environ)
        try:
            endpoint, values = adapter.match()
            handler = self._endpoint_handlers[endpoint]
            return handler(request, **values)
        except NotFound:
            return json_response({"error": "Not Found"}, 404)
        except MethodNotAllowed:
            return json_response({"error": "Method Not Allowed"}, 405)
        except ValidationError as e:
            return json_response({"error": str(e), "problems": e.problems}, 400)
        except InstanceNotFoundError as e:
            return json_response({"error": str(e)}, 404)
        except RuntimeAdapterError as e:
            logger.warning("Request %s failed: %s", request.path, e)
            return json_response({"error": str(e)}, 502)
        except RegistryError as e:
            logger.error("Request %s failed: %s", request.path, e)
            return json_response({"error": str(e)}, 500)
        except Exception:
            logger.exception("Error handling request %s", request.path)
            return json_response({"error": "Internal Server Error"}, 500)
