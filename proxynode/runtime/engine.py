# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container engine operations over the Docker SDK.

Lifecycle calls go through the low-level ``APIClient`` so each operation
is a single engine request addressed by id or name.  Logs and exec output
are read as raw framed streams and split with ``proxynode.runtime.demux``
rather than through the SDK's own helpers, which merge stdout and stderr.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Mapping, Sequence
from typing import Any

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from proxynode.config import EngineConfig
from proxynode.errors import EngineError, ExecError, StatsError
from proxynode.runtime.demux import drain_with_timeout
from proxynode.types import TrafficSnapshot


logger = logging.getLogger(__name__)

DEFAULT_TAG = "latest"

# Separator between stdout and stderr in ``get_logs`` output.
STDERR_SEPARATOR = "\n---stderr---\n"

# Stats samples to inspect before giving up on network counters.
_MAX_STATS_SAMPLES = 3

_LOG_PARAMS = {"stdout": 1, "stderr": 1, "follow": 0, "timestamps": 0}

# Engine failures: SDK errors and transport errors from the HTTP session.
_ENGINE_ERRORS = (DockerException, RequestException)


def _reason(error: Exception) -> str:
    """Best human-readable description of an SDK error."""
    explanation = getattr(error, "explanation", None)
    if explanation:
        return str(explanation)
    return str(error) or type(error).__name__


def split_image_reference(image: str) -> tuple[str, str]:
    """Split an image reference into repository and tag.

    The tag defaults to ``latest``.  A registry port (``host:5000/img``)
    is not mistaken for a tag.  Digest references keep the digest as tag.
    """
    if "@" in image:
        repository, digest = image.split("@", 1)
        return repository, digest
    head, _, last = image.rpartition("/")
    if ":" in last:
        name, tag = last.split(":", 1)
        repository = f"{head}/{name}" if head else name
        return repository, tag or DEFAULT_TAG
    return image, DEFAULT_TAG


def image_reference(image: str) -> str:
    """Return ``image`` with an explicit tag (or digest)."""
    repository, tag = split_image_reference(image)
    separator = "@" if "@" in image else ":"
    return f"{repository}{separator}{tag}"


def parse_port_mappings(
    target: str, mappings: Sequence[str]
) -> dict[str, int]:
    """Parse ``"host:container[/proto]"`` strings into SDK port bindings.

    Returns:
        Mapping of ``"<container port>/<proto>"`` to host port.

    Raises:
        EngineError: On malformed syntax.
    """
    bindings: dict[str, int] = {}
    for mapping in mappings:
        host, sep, container = mapping.partition(":")
        port, _, proto = container.partition("/")
        proto = proto or "tcp"
        if (
            not sep
            or not host.isdigit()
            or not port.isdigit()
            or proto not in ("tcp", "udp")
        ):
            raise EngineError(
                "create", target, f"Invalid port mapping: {mapping!r}"
            )
        bindings[f"{int(port)}/{proto}"] = int(host)
    return bindings


def parse_volume_mappings(
    target: str, mappings: Sequence[str]
) -> dict[str, dict[str, str]]:
    """Parse ``"src:dst[:ro]"`` strings into SDK bind mounts.

    Raises:
        EngineError: On malformed syntax.
    """
    volumes: dict[str, dict[str, str]] = {}
    for mapping in mappings:
        parts = mapping.split(":")
        if len(parts) == 3 and parts[2] in ("ro", "rw"):
            src, dst, mode = parts
        elif len(parts) == 2:
            src, dst = parts
            mode = "rw"
        else:
            raise EngineError(
                "create", target, f"Invalid volume mapping: {mapping!r}"
            )
        if not src or not dst.startswith("/"):
            raise EngineError(
                "create", target, f"Invalid volume mapping: {mapping!r}"
            )
        volumes[src] = {"bind": dst, "mode": mode}
    return volumes


def _snapshot_from_networks(
    container_id: str, networks: Mapping[str, Any]
) -> TrafficSnapshot:
    """Sum RX/TX byte counters over all interfaces of a stats sample."""
    rx = 0
    tx = 0
    for interface, counters in networks.items():
        if not isinstance(counters, Mapping):
            raise StatsError(
                f"Malformed stats for {container_id}: interface "
                f"{interface} is not an object"
            )
        for key in ("rx_bytes", "tx_bytes"):
            value = counters.get(key)
            if isinstance(value, bool) or not isinstance(value, int):
                raise StatsError(
                    f"Malformed stats for {container_id}: "
                    f"{interface}.{key}={value!r}"
                )
        rx += counters["rx_bytes"]
        tx += counters["tx_bytes"]
    return TrafficSnapshot(total_bytes_in=rx, total_bytes_out=tx)


def _shutdown_socket(sock: Any) -> None:
    """Unblock a pending read on an exec socket and close it."""
    raw = getattr(sock, "_sock", sock)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Exec socket shutdown failed: %s", e)
    sock.close()


class ContainerEngine:
    """Thin, stateless wrapper over the Docker engine API.

    The SDK client is created lazily on first use so that constructing
    the engine never touches the socket.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """The Docker SDK client (created on first access)."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    try:
                        self._client = docker.DockerClient(
                            base_url=self._config.base_url,
                            timeout=self._config.timeout,
                        )
                    except _ENGINE_ERRORS as e:
                        raise EngineError(
                            "connect", self._config.base_url, _reason(e)
                        ) from e
        return self._client

    def ping(self) -> None:
        """Check that the engine answers.

        Raises:
            EngineError: If the engine is unreachable.
        """
        try:
            self.client.ping()
        except _ENGINE_ERRORS as e:
            raise EngineError("ping", self._config.base_url, _reason(e)) from e

    def close(self) -> None:
        """Close the SDK client's connection pool."""
        if self._client is not None:
            self._client.close()

    # ------------------------------------------------------------------
    # Lifecycle
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
        """Create (but do not start) a container.

        Pulls the image if it is not present and force-removes any
        existing container with exactly the same name first.

        Args:
            image: Image reference; tag defaults to ``latest``.
            name: Container name.
            port_mappings: ``"host:container[/proto]"`` strings.
            env: Environment variables.
            volume_mappings: ``"src:dst[:ro]"`` strings.
            command: Optional command override.
            network_mode: Network to join; defaults to the configured one.

        Returns:
            The engine's container id.

        Raises:
            EngineError: On invalid mappings or engine failure.
        """
        ports = parse_port_mappings(name, port_mappings)
        volumes = parse_volume_mappings(name, volume_mappings)

        self.ensure_image(image)
        self._remove_existing(name)

        try:
            container = self.client.containers.create(
                image_reference(image),
                command=list(command) if command else None,
                name=name,
                environment=dict(env),
                ports=ports,
                volumes=volumes,
                restart_policy={"Name": "always"},
                tty=False,
                network_mode=network_mode or self._config.network_mode,
            )
        except _ENGINE_ERRORS as e:
            raise EngineError("create", name, _reason(e)) from e

        logger.info("Created container %s (%s)", name, container.id[:12])
        return container.id

    def ensure_image(self, image: str) -> None:
        """Pull ``image`` unless it is already present locally."""
        repository, tag = split_image_reference(image)
        reference = image_reference(image)
        try:
            self.client.images.get(reference)
            return
        except ImageNotFound:
            pass
        except _ENGINE_ERRORS as e:
            raise EngineError("inspect image", reference, _reason(e)) from e

        logger.info("Pulling image %s", reference)
        try:
            self.client.images.pull(repository, tag=tag)
        except _ENGINE_ERRORS as e:
            raise EngineError("pull", reference, _reason(e)) from e

    def _remove_existing(self, name: str) -> None:
        """Force-remove a container with exactly this name, if any."""
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        except _ENGINE_ERRORS as e:
            raise EngineError("inspect", name, _reason(e)) from e

        # ``get`` also matches id prefixes; only replace an exact name.
        if existing.name != name:
            return
        logger.info("Removing existing container %s", name)
        try:
            existing.remove(force=True)
        except NotFound:
            pass
        except _ENGINE_ERRORS as e:
            raise EngineError("remove", name, _reason(e)) from e

    def start(self, container_id: str) -> None:
        """Start a created or stopped container."""
        self._call("start", container_id, self.client.api.start)

    def stop(self, container_id: str) -> None:
        """Stop a running container."""
        self._call("stop", container_id, self.client.api.stop)

    def pause(self, container_id: str) -> None:
        """Freeze all processes of a container."""
        self._call("pause", container_id, self.client.api.pause)

    def unpause(self, container_id: str) -> None:
        """Resume a paused container."""
        self._call("unpause", container_id, self.client.api.unpause)

    def delete(self, container_id: str) -> None:
        """Force-remove a container (running or not)."""
        self._call(
            "delete",
            container_id,
            lambda cid: self.client.api.remove_container(cid, force=True),
        )

    def get_status(self, container_id: str) -> str:
        """Return the engine state string, or ``"unknown"`` on any failure."""
        try:
            info = self.client.api.inspect_container(container_id)
            return str(info["State"]["Status"])
        except (
            DockerException,
            RequestException,
            EngineError,
            KeyError,
            TypeError,
        ) as e:
            logger.debug("Status of %s unavailable: %s", container_id, e)
            return "unknown"

    def _call(self, operation: str, container_id: str, func: Any) -> None:
        try:
            func(container_id)
        except _ENGINE_ERRORS as e:
            raise EngineError(operation, container_id, _reason(e)) from e
        logger.info("Container %s: %s", container_id, operation)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def get_logs(self, container_id: str) -> str:
        """Return the container's log output.

        Stdout comes first; non-empty stderr follows after a separator.

        Raises:
            EngineError: If the engine rejects the request.
            StreamCancelled: If the log stream is not drained in time.
        """
        api = self.client.api
        url = (
            f"{api.base_url}/v{api.api_version}"
            f"/containers/{container_id}/logs"
        )
        try:
            response = api.get(url, params=_LOG_PARAMS, stream=True)
        except (DockerException, RequestException, OSError) as e:
            raise EngineError("logs", container_id, _reason(e)) from e

        try:
            if response.status_code >= 400:
                raise EngineError(
                    "logs",
                    container_id,
                    f"HTTP {response.status_code}: {response.text.strip()}",
                )
            output = drain_with_timeout(
                response.raw, self._config.exec_timeout
            )
        finally:
            response.close()

        if output.stderr:
            return output.stdout + STDERR_SEPARATOR + output.stderr
        return output.stdout

    def exec(self, container_id: str, argv: Sequence[str]) -> str:
        """Run a command inside a container and return its stdout.

        Args:
            container_id: Container id or name.
            argv: Command to execute (no shell).

        Returns:
            Stdout with surrounding whitespace trimmed.  Empty is valid.

        Raises:
            EngineError: If the exec session cannot be created.
            ExecError: If the command exits non-zero.
            StreamCancelled: If the output is not drained in time.
        """
        api = self.client.api
        argv = list(argv)
        try:
            exec_id = api.exec_create(
                container_id, argv, stdout=True, stderr=True, tty=False
            )["Id"]
            sock = api.exec_start(exec_id, socket=True)
        except _ENGINE_ERRORS as e:
            raise EngineError("exec", container_id, _reason(e)) from e

        try:
            output = drain_with_timeout(
                sock,
                self._config.exec_timeout,
                close=lambda: _shutdown_socket(sock),
            )
        finally:
            sock.close()

        if output.stderr.strip():
            logger.debug(
                "Exec %s in %s stderr: %s",
                argv[0],
                container_id,
                output.stderr.strip(),
            )

        try:
            exit_code = api.exec_inspect(exec_id).get("ExitCode")
        except _ENGINE_ERRORS as e:
            raise EngineError("exec inspect", container_id, _reason(e)) from e

        if exit_code:
            raise ExecError(container_id, argv, exit_code, output.stderr)
        return output.stdout.strip()

    def get_stats(self, container_id: str) -> TrafficSnapshot:
        """Read cumulative network counters from the engine stats API.

        Uses the first sample that carries network counters.

        Raises:
            EngineError: If the engine rejects the request.
            StatsError: If no sample carries valid network counters.
        """
        try:
            samples = self.client.api.stats(
                container_id, decode=True, stream=True
            )
        except _ENGINE_ERRORS as e:
            raise EngineError("stats", container_id, _reason(e)) from e

        try:
            for index, sample in enumerate(samples):
                networks = sample.get("networks")
                if networks:
                    return _snapshot_from_networks(container_id, networks)
                if index + 1 >= _MAX_STATS_SAMPLES:
                    break
        except _ENGINE_ERRORS as e:
            raise EngineError("stats", container_id, _reason(e)) from e
        finally:
            close = getattr(samples, "close", None)
            if close is not None:
                close()

        raise StatsError(f"No network counters in stats for {container_id}")
