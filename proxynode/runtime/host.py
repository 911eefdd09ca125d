# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Privileged host commands: directories, files, firewall and accounting.

Every command goes through ``HostCommands.run``, which optionally prefixes
``sudo -n`` (never prompt), captures both output streams and raises
``HostCommandError`` on a non-zero exit.  Idempotent operations pass an
allow-list of output fragments that mean "already in the desired state";
a failure whose output matches one of them counts as success.

Traffic accounting uses a dedicated iptables chain.  Each parent chain
(``FORWARD`` by default, where published container ports are routed)
jumps into it, and each metered port gets a pair of ``RETURN`` rules, one
per direction.  ``RETURN`` hands the packet back to the parent chain
unchanged; the rules exist only for their byte counters.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from proxynode.config import HostConfig
from proxynode.errors import HostCommandError
from proxynode.types import MAX_PORT, TrafficSnapshot


logger = logging.getLogger(__name__)

# Output fragments that make a failed command count as a no-op.
ALREADY_EXISTS = (
    "already exists",
    "Skipping adding existing rule",
)
NO_SUCH_RULE = (
    "Bad rule",
    "does a matching rule exist",
    "Could not delete non-existent rule",
    "No chain/target/match by that name",
)
NO_SUCH_FILE = ("No such file or directory",)

_SUDO_PREFIX = ("sudo", "-n")

# Owner-only: written files hold TLS private keys.
_FILE_MODE = "600"


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one host command.

    Attributes:
        argv: Command as requested (without the sudo prefix).
        returncode: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """True if the command exited zero."""
        return self.returncode == 0


def _check_port(port: int) -> None:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"Port must be an integer: {port!r}")
    if not 0 < port <= MAX_PORT:
        raise ValueError(f"Port out of range: {port}")


class HostCommands:
    """Runs host commands for provisioning, firewalling and accounting.

    Stateless apart from configuration; safe to share between threads.
    """

    def __init__(self, config: HostConfig | None = None) -> None:
        self._config = config or HostConfig()

    @property
    def accounting_chain(self) -> str:
        """Name of the dedicated traffic accounting chain."""
        return self._config.accounting_chain

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def run(
        self, argv: Sequence[str], allow: Sequence[str] = ()
    ) -> CommandResult:
        """Run a host command.

        Args:
            argv: Command and arguments (no shell is involved).
            allow: Output fragments that turn a non-zero exit into an
                accepted no-op.

        Returns:
            The captured result.  ``result.ok`` is False only when the
            failure was accepted via ``allow``.

        Raises:
            HostCommandError: On a non-zero exit outside the allow-list,
                a timeout, or a missing executable.
        """
        argv = tuple(argv)
        full = [*_SUDO_PREFIX, *argv] if self._config.use_sudo else list(argv)
        timeout = self._config.command_timeout
        logger.debug("Running host command: %s", " ".join(argv))

        try:
            proc = subprocess.run(
                full,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise HostCommandError(
                argv, -1, "", f"timed out after {timeout}s"
            ) from e
        except OSError as e:
            raise HostCommandError(argv, 127, "", str(e)) from e

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if result.ok:
            return result

        output = f"{result.stdout}\n{result.stderr}"
        if any(marker in output for marker in allow):
            logger.debug(
                "Host command '%s' exited %d, accepted as no-op",
                " ".join(argv),
                result.returncode,
            )
            return result

        raise HostCommandError(
            argv, result.returncode, result.stdout, result.stderr
        )

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def create_directory(self, path: Path | str) -> None:
        """Create a directory and its parents (no-op if present)."""
        self.run(["mkdir", "-p", str(path)])

    def remove_directory(self, path: Path | str) -> None:
        """Recursively remove a directory (no-op if absent)."""
        self.run(["rm", "-rf", str(path)], allow=NO_SUCH_FILE)

    def write_file(self, path: Path | str, content: str) -> None:
        """Atomically write a root-owned, owner-only file.

        The content goes to a private local temp file, is installed with
        mode 600 next to the target, then renamed over it.  A reader never
        sees a half-written file.  Temp files are removed on every path.

        Raises:
            HostCommandError: If installing or renaming fails.
        """
        target = str(path)
        staged = f"{target}.proxynode-tmp"

        fd, tmp = tempfile.mkstemp(prefix="proxynode-", suffix=".tmp")
        try:
            with open(fd, "w") as f:
                f.write(content)
            self.run(["install", "-m", _FILE_MODE, tmp, staged])
            try:
                self.run(["mv", "-f", staged, target])
            except HostCommandError:
                self._discard_staged(staged)
                raise
        finally:
            Path(tmp).unlink(missing_ok=True)
        logger.debug("Wrote %s", target)

    def _discard_staged(self, staged: str) -> None:
        try:
            self.run(["rm", "-f", staged], allow=NO_SUCH_FILE)
        except HostCommandError as e:
            logger.warning("Could not remove staged file %s: %s", staged, e)

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------

    def open_firewall_port(self, port: int, proto: str = "tcp") -> None:
        """Allow inbound traffic on a port (no-op if already allowed)."""
        _check_port(port)
        self.run(
            [self._config.firewall_command, "allow", f"{port}/{proto}"],
            allow=ALREADY_EXISTS,
        )
        logger.info("Opened firewall port %d/%s", port, proto)

    def close_firewall_port(self, port: int, proto: str = "tcp") -> None:
        """Remove the allow rule for a port (no-op if absent)."""
        _check_port(port)
        self.run(
            [
                self._config.firewall_command,
                "delete",
                "allow",
                f"{port}/{proto}",
            ],
            allow=NO_SUCH_RULE,
        )
        logger.info("Closed firewall port %d/%s", port, proto)

    # ------------------------------------------------------------------
    # Traffic accounting
    # ------------------------------------------------------------------

    def add_traffic_counting_rule(self, port: int) -> None:
        """Ensure counting rules for both directions of a TCP port exist.

        Safe to replay: the chain, the jumps and each rule are checked
        before being added, so repeated calls never duplicate rules.

        Raises:
            HostCommandError: If a rule cannot be added or persisted.
        """
        _check_port(port)
        self.ensure_accounting_chain()

        added = 0
        for spec in self._counting_specs(port):
            if self._rule_exists(self.accounting_chain, spec):
                continue
            self.run([self._iptables, "-A", self.accounting_chain, *spec])
            added += 1

        if added:
            self.persist_rules()
            logger.info("Added traffic counting rules for port %d", port)
        else:
            logger.debug("Traffic counting rules for port %d present", port)

    def remove_traffic_counting_rule(self, port: int) -> None:
        """Remove the counting rules of a port (no-op if absent)."""
        _check_port(port)
        for spec in self._counting_specs(port):
            self.run(
                [self._iptables, "-D", self.accounting_chain, *spec],
                allow=NO_SUCH_RULE,
            )
        self.persist_rules()
        logger.info("Removed traffic counting rules for port %d", port)

    def ensure_accounting_chain(self) -> None:
        """Create the accounting chain and its jumps from parent chains."""
        self.run(
            [self._iptables, "-N", self.accounting_chain],
            allow=ALREADY_EXISTS,
        )
        jump = ["-j", self.accounting_chain]
        for parent in self._config.accounting_parents:
            if not self._rule_exists(parent, jump):
                self.run([self._iptables, "-I", parent, *jump])
                logger.info(
                    "Linked %s into %s", self.accounting_chain, parent
                )

    def persist_rules(self) -> None:
        """Save the rule set so it survives a reboot (if configured)."""
        if self._config.persist_command:
            self.run(list(self._config.persist_command))

    def read_traffic_counters(self, port: int) -> TrafficSnapshot:
        """Read the byte counters of a port's accounting rules.

        Bytes to the port (``dpt``) count as inbound, bytes from it
        (``spt``) as outbound.

        Raises:
            HostCommandError: If the chain cannot be listed.
        """
        _check_port(port)
        result = self.run(
            [self._iptables, "-L", self.accounting_chain, "-v", "-x", "-n"]
        )
        bytes_in = 0
        bytes_out = 0
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 2 or not fields[1].isdigit():
                continue
            if f"dpt:{port}" in fields:
                bytes_in += int(fields[1])
            elif f"spt:{port}" in fields:
                bytes_out += int(fields[1])
        return TrafficSnapshot(
            total_bytes_in=bytes_in, total_bytes_out=bytes_out
        )

    @property
    def _iptables(self) -> str:
        return self._config.iptables_command

    def _rule_exists(self, chain: str, spec: Sequence[str]) -> bool:
        result = self.run(
            [self._iptables, "-C", chain, *spec], allow=NO_SUCH_RULE
        )
        return result.ok

    @staticmethod
    def _counting_specs(port: int) -> list[list[str]]:
        return [
            ["-p", "tcp", "--dport", str(port), "-j", "RETURN"],
            ["-p", "tcp", "--sport", str(port), "-j", "RETURN"],
        ]
