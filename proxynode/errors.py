# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for the node agent.

Validation errors are the caller's fault and are raised before any side
effect.  Adapter errors carry enough context (operation, target, captured
output) to be actionable from a single log line.  Nothing in this package
retries internally; retry policy belongs to the caller.
"""

from __future__ import annotations

from collections.abc import Sequence


class NodeAgentError(Exception):
    """Base exception for all node agent errors."""


class ValidationError(NodeAgentError):
    """A provision request failed validation.

    Attributes:
        problems: Individual validation failures, in field order.
    """

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class RegistryError(NodeAgentError):
    """The instance registry file could not be read or written."""


class InstanceNotFoundError(NodeAgentError):
    """The instance is not in the registry."""


class SubmissionError(NodeAgentError):
    """The usage collector was unreachable or rejected a report."""


class RuntimeAdapterError(NodeAgentError):
    """Base exception for container engine and host command failures."""


class EngineError(RuntimeAdapterError):
    """The container engine rejected an operation.

    Attributes:
        operation: Engine operation that failed (e.g. ``"create"``).
        target: Container id, name or image the operation targeted.
        reason: Engine-provided failure description.
    """

    def __init__(self, operation: str, target: str, reason: str) -> None:
        self.operation = operation
        self.target = target
        self.reason = reason
        super().__init__(f"Engine {operation} failed for {target}: {reason}")


class HostCommandError(RuntimeAdapterError):
    """A host command exited non-zero outside the idempotency allow-list.

    Attributes:
        argv: Command that was run (without the sudo prefix).
        returncode: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip() or "no output"
        super().__init__(
            f"Host command '{' '.join(self.argv)}' failed "
            f"(exit {returncode}): {detail}"
        )


class ExecError(RuntimeAdapterError):
    """A command executed inside a container exited non-zero.

    Attributes:
        container: Container id or name.
        argv: Command that was executed.
        exit_code: Exit code reported by the engine.
        stderr: Demultiplexed standard error of the command.
    """

    def __init__(
        self,
        container: str,
        argv: Sequence[str],
        exit_code: int,
        stderr: str,
    ) -> None:
        self.container = container
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Exec '{' '.join(self.argv)}' in {container} exited "
            f"{exit_code}: {stderr.strip() or 'no stderr'}"
        )


class StreamCancelled(RuntimeAdapterError):
    """A demultiplexed log/exec read was cancelled before EOF."""


class StatsError(RuntimeAdapterError):
    """Traffic counters could not be read or were malformed."""
