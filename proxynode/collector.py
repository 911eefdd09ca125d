# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Client for the remote usage collector.

One POST per metering cycle with the JSON body
``{"usages": [{"instanceId": ..., "totalUsageInBytes": ...}]}`` and the
API key in the ``X-Api-Key`` header.  Nothing beyond a 2xx status is
expected back.  There is no retry and no local queue: counters are
cumulative, so the next cycle's delta covers what a dropped report
missed.
"""

from __future__ import annotations

import logging

import httpx

from proxynode.config import CollectorConfig
from proxynode.errors import SubmissionError
from proxynode.types import UsageReport


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"


class UsageCollectorClient:
    """Submits usage reports to the collector.

    Args:
        config: Collector endpoint settings.
    """

    def __init__(self, config: CollectorConfig) -> None:
        self._config = config

    def submit(self, report: UsageReport) -> None:
        """POST a report to the collector.

        Args:
            report: Usage for one cycle.

        Raises:
            SubmissionError: On network failure, timeout or a non-2xx
                response.
        """
        headers = {"content-type": "application/json"}
        if self._config.api_key:
            headers[API_KEY_HEADER] = self._config.api_key

        url = self._config.usage_url
        try:
            with httpx.Client(timeout=self._config.timeout) as client:
                response = client.post(
                    url, headers=headers, json=report.to_dict()
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SubmissionError(
                f"Collector rejected usage report: HTTP "
                f"{e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise SubmissionError(f"Collector unreachable: {e}") from e

        logger.info(
            "Submitted usage for %d instance(s) to %s",
            len(report.usages),
            url,
        )
