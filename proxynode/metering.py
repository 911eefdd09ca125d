# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Periodic usage metering.

Each cycle reads every registered instance, fetches its cumulative
traffic counters, turns them into a per-cycle delta and submits one
aggregated report to the collector.

Counter policy: the delta is ``(rx - last_rx) + (tx - last_tx)`` only if
neither counter went backwards.  If one did (the container was recreated
and its counters restarted near zero) the delta is 0 for that cycle.
The stored counters always advance to what was observed, so the next
cycle compares against fresh values.  A reset therefore loses at most
one cycle of usage and never produces a negative or inflated delta.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace

from proxynode.collector import UsageCollectorClient
from proxynode.config import MeteringConfig
from proxynode.errors import SubmissionError
from proxynode.registry import InstanceRegistry
from proxynode.types import InstanceRecord, TrafficSnapshot, UsageReport


logger = logging.getLogger(__name__)


def compute_delta(record: InstanceRecord, snapshot: TrafficSnapshot) -> int:
    """Bytes used since the counters stored in ``record``.

    Returns 0 if either counter is lower than its stored value.
    """
    if (
        snapshot.total_bytes_in < record.last_total_rx
        or snapshot.total_bytes_out < record.last_total_tx
    ):
        return 0
    return (snapshot.total_bytes_in - record.last_total_rx) + (
        snapshot.total_bytes_out - record.last_total_tx
    )


@dataclass(frozen=True)
class CycleSummary:
    """What one metering cycle did.

    Attributes:
        processed: Instances whose counters were read and stored.
        failed: Instances whose fetch failed or timed out.
        report: Usage gathered this cycle (may be empty).
        submitted: Whether the report reached the collector.
    """

    processed: int = 0
    failed: int = 0
    report: UsageReport = field(default_factory=UsageReport)
    submitted: bool = False


class UsageMeter:
    """Single-flight periodic metering job with explicit start/stop.

    Args:
        registry: Instance registry (read all, update per instance).
        fetch_traffic: Returns the cumulative counters of an instance.
        collector: Destination of the per-cycle report.
        config: Interval, fetch timeout and pool size.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        fetch_traffic: Callable[[int], TrafficSnapshot],
        collector: UsageCollectorClient,
        config: MeteringConfig | None = None,
    ) -> None:
        self._registry = registry
        self._fetch_traffic = fetch_traffic
        self._collector = collector
        self._config = config or MeteringConfig()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background loop (no-op if already running)."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="UsageMeter"
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop and wait for an in-flight cycle to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Usage meter did not stop within %ss", timeout)
        self._thread = None

    def _run_loop(self) -> None:
        logger.info(
            "Usage metering started (interval: %ss, source: %s)",
            self._config.interval,
            self._config.traffic_source,
        )
        while not self._stop_event.wait(timeout=self._config.interval):
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Metering cycle failed")
        logger.info("Usage metering stopped")

    def run_cycle(self) -> CycleSummary:
        """Run one metering cycle.

        A call made while another cycle is in progress waits for it, so
        cycles never overlap.

        Raises:
            RegistryError: If the registry cannot be read or written.
        """
        with self._cycle_lock:
            return self._run_cycle()

    def _run_cycle(self) -> CycleSummary:
        records = self._registry.get_all()
        if not records:
            logger.info("No registered instances, skipping metering cycle")
            return CycleSummary()

        snapshots = self._fetch_all(records)
        report = UsageReport()
        for record in records:
            snapshot = snapshots.get(record.id)
            if snapshot is None:
                continue
            delta = compute_delta(record, snapshot)
            if delta > 0:
                report.add(record.id, delta)
            elif (
                snapshot.total_bytes_in < record.last_total_rx
                or snapshot.total_bytes_out < record.last_total_tx
            ):
                logger.info(
                    "Counters of instance %d went backwards "
                    "(rx %d -> %d, tx %d -> %d), treating as reset",
                    record.id,
                    record.last_total_rx,
                    snapshot.total_bytes_in,
                    record.last_total_tx,
                    snapshot.total_bytes_out,
                )
            self._registry.update(
                replace(
                    record,
                    last_total_rx=snapshot.total_bytes_in,
                    last_total_tx=snapshot.total_bytes_out,
                )
            )

        submitted = False
        if report.is_empty():
            logger.debug("No usage this cycle, nothing to submit")
        else:
            try:
                self._collector.submit(report)
                submitted = True
            except SubmissionError as e:
                logger.error(
                    "Dropping usage report for %d instance(s): %s",
                    len(report.usages),
                    e,
                )

        return CycleSummary(
            processed=len(snapshots),
            failed=len(records) - len(snapshots),
            report=report,
            submitted=submitted,
        )

    def _fetch_all(
        self, records: list[InstanceRecord]
    ) -> dict[int, TrafficSnapshot]:
        """Fetch counters concurrently with one shared deadline.

        Failed and timed-out fetches are logged and left out.  A timed-out
        fetch keeps its worker thread until the engine call returns, and
        the interpreter joins such threads at exit, so shutdown can wait up
        to ``engine.timeout`` for a hung stats read.
        """
        pool = ThreadPoolExecutor(
            max_workers=min(self._config.max_workers, len(records)),
            thread_name_prefix="TrafficFetch",
        )
        try:
            futures = {
                pool.submit(self._fetch_traffic, record.id): record
                for record in records
            }
            done, not_done = concurrent.futures.wait(
                futures, timeout=self._config.fetch_timeout
            )
        finally:
            # A hung fetch must not hold up the cycle.
            pool.shutdown(wait=False, cancel_futures=True)

        for future in not_done:
            logger.warning(
                "Traffic fetch for instance %d timed out after %ss",
                futures[future].id,
                self._config.fetch_timeout,
            )

        snapshots: dict[int, TrafficSnapshot] = {}
        for future in done:
            record = futures[future]
            try:
                snapshots[record.id] = future.result()
            except Exception as e:
                logger.warning(
                    "Traffic fetch for instance %d failed: %s", record.id, e
                )
        return snapshots
