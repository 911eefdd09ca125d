# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Root logger setup and secret redaction for the node agent.

TLS private keys and the collector API key are registered with
`SecretFilter` as soon as they are known.  Engine and host command errors
often echo their input back, so the filter also sees exception arguments.
"""

import logging
import re
from typing import ClassVar


class SecretFilter(logging.Filter):
    """Replaces registered secrets with ``[REDACTED]``.

    The registry is class-wide, so every handler carrying a filter
    redacts every secret registered anywhere in the process.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact the message and its string or exception arguments."""
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, (str, BaseException))
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Redact ``secret`` from now on.

        Lines of a multi-line secret such as a PEM body are registered on
        their own too.  Empty strings are ignored.
        """
        if not secret:
            return
        cls._secrets.add(secret)
        for line in secret.splitlines():
            line = line.strip()
            # Skip PEM armour lines, they are not secret.
            if len(line) >= 16 and not line.startswith("-----"):
                cls._secrets.add(line)
        cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Forget every registered secret (tests)."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        if cls._secrets:
            # Longest first so a full secret wins over its own lines.
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Root level; the engine and HTTP client loggers never go
            below INFO.
        format_string: Record format, timestamped by default.
        add_secret_filter: Attach `SecretFilter` to the handler.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace, never stack, handlers on reconfiguration.
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # docker-py and httpx log every request at DEBUG; keep them at INFO.
    for noisy in ("docker", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))
