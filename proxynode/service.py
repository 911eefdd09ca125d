# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Node agent service entry point.

Wires the runtime adapter, instance registry, provisioner, usage meter,
rule restorer and HTTP API together, and runs them until a shutdown
signal arrives.

Usage:
    proxynode [--config PATH] [--debug]
"""

import argparse
import logging
import signal
import threading
from pathlib import Path

from proxynode.api import ApiServer
from proxynode.collector import UsageCollectorClient
from proxynode.config import ConfigError, ServerConfig
from proxynode.errors import EngineError
from proxynode.logging import configure_logging
from proxynode.metering import UsageMeter
from proxynode.orchestrator import Provisioner
from proxynode.registry import InstanceRegistry
from proxynode.restorer import FirewallRuleRestorer
from proxynode.runtime.adapter import RuntimeAdapter


logger = logging.getLogger(__name__)


class NodeAgentService:
    """Runs every node agent component for one host.

    Args:
        config: Complete agent configuration.
        adapter: Runtime adapter override (built from config if None).
    """

    def __init__(
        self,
        config: ServerConfig,
        adapter: RuntimeAdapter | None = None,
    ) -> None:
        self.config = config
        self._stopped = False
        self._shutdown_event = threading.Event()

        self.adapter = adapter or RuntimeAdapter.from_config(config)
        self.registry = InstanceRegistry(config.instances.registry_path)
        self.provisioner = Provisioner(
            self.adapter,
            self.registry,
            config.instances,
            network_mode=config.engine.network_mode,
        )

        self.meter: UsageMeter | None = None
        if config.metering.enabled:
            if config.engine.timeout > config.metering.fetch_timeout:
                # Abandoned fetch threads are joined at interpreter exit.
                logger.warning(
                    "engine.timeout (%ss) exceeds metering.fetch_timeout "
                    "(%ss); a hung stats read can delay shutdown",
                    config.engine.timeout,
                    config.metering.fetch_timeout,
                )
            self.meter = UsageMeter(
                self.registry,
                self.provisioner.get_instance_traffic,
                UsageCollectorClient(config.collector),
                config.metering,
            )

        self.restorer: FirewallRuleRestorer | None = None
        if config.restorer.enabled:
            self.restorer = FirewallRuleRestorer(
                self.adapter, self.registry, delay=config.restorer.delay
            )

        self.api: ApiServer | None = None
        if config.api.enabled:
            self.api = ApiServer(
                self.provisioner,
                self.registry,
                host=config.api.host,
                port=config.api.port,
                metering_running=self._metering_running,
            )

    def _metering_running(self) -> bool:
        return self.meter is not None and self.meter.is_running

    def start(self) -> None:
        """Start all components and block until ``stop`` is called."""
        logger.info("Starting node agent...")

        try:
            self.adapter.engine.ping()
        except EngineError as e:
            logger.warning("Container engine not reachable yet: %s", e)

        # Fail fast on an unreadable registry.
        count = len(self.registry.get_all())
        logger.info(
            "Registry %s holds %d instance(s)",
            self.registry.path,
            count,
        )

        if self.restorer is not None:
            self.restorer.start()
        if self.meter is not None:
            self.meter.start()
        if self.api is not None:
            self.api.start()

        logger.info("Node agent running")
        self._shutdown_event.wait()

    def stop(self) -> None:
        """Stop all components (idempotent)."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping node agent...")
        self._shutdown_event.set()

        timeout = self.config.shutdown_timeout
        if self.api is not None:
            self.api.stop()
        if self.restorer is not None:
            self.restorer.stop(timeout=timeout)
        if self.meter is not None:
            self.meter.stop(timeout=timeout)
        self.adapter.engine.close()

        logger.info("Node agent stopped")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code (0=success, 1=config error, 2=startup, 3=runtime error).
    """
    parser = argparse.ArgumentParser(
        description="Proxy node agent",
        epilog=(
            "Provisions tenant proxy containers and meters their traffic."
        ),
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help=(
            "Path to proxynode.yaml config file"
            " (default: ~/.config/proxynode/proxynode.yaml)"
        ),
    )
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    logger.info("Proxy node agent starting...")

    try:
        config = ServerConfig.from_yaml(config_path=args.config)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    try:
        service = NodeAgentService(config)
    except Exception as e:
        logger.exception("Failed to initialize service: %s", e)
        return 2

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        service.stop()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        service.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        service.stop()
