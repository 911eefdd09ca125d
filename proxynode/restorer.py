# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Startup replay of traffic counting rules.

Packet filter rules live in the kernel and can be lost on a host restart
while the registry on disk survives.  Once per process start, after a
short delay for the container engine to settle, the counting rule of
every registered instance is re-applied.  Re-applying is idempotent.
"""

from __future__ import annotations

import logging
import threading

from proxynode.registry import InstanceRegistry
from proxynode.runtime.adapter import RuntimeAdapter


logger = logging.getLogger(__name__)


class FirewallRuleRestorer:
    """One-shot background task re-applying counting rules.

    Args:
        adapter: Runtime adapter used to add the rules.
        registry: Source of the inbound ports to restore.
        delay: Seconds to wait before restoring.
    """

    def __init__(
        self,
        adapter: RuntimeAdapter,
        registry: InstanceRegistry,
        delay: float = 10.0,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._delay = delay
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._done = threading.Event()

    @property
    def done(self) -> threading.Event:
        """Set once the restore pass has finished (or was skipped)."""
        return self._done

    def start(self) -> None:
        """Start the delayed restore in a background thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="RuleRestorer"
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Cancel a pending restore and wait for the thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        try:
            if self._stop_event.wait(timeout=self._delay):
                logger.info("Rule restore cancelled before it started")
                return
            self.restore()
        except Exception:
            logger.exception("Firewall rule restore failed")
        finally:
            self._done.set()

    def restore(self) -> tuple[int, int]:
        """Re-apply the counting rule of every registered instance.

        Individual failures are logged and skipped.

        Returns:
            ``(restored, failed)`` counts.

        Raises:
            RegistryError: If the registry cannot be read.
        """
        records = self._registry.get_all()
        logger.info("Restoring counting rules for %d instance(s)", len(records))

        restored = 0
        failed = 0
        for record in records:
            if self._stop_event.is_set():
                logger.info("Rule restore interrupted by shutdown")
                break
            try:
                self._adapter.add_traffic_counting_rule(record.inbound_port)
                restored += 1
            except Exception as e:
                failed += 1
                logger.warning(
                    "Could not restore counting rule for instance %d "
                    "(port %d): %s",
                    record.id,
                    record.inbound_port,
                    e,
                )

        logger.info(
            "Counting rules restored: %d ok, %d failed", restored, failed
        )
        return restored, failed
