# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container engine and host access for the node agent.

Public API:

- ``RuntimeAdapter``: façade over the engine and host commands
- ``ContainerEngine``: Docker SDK wrapper
- ``HostCommands``: privileged shell commands (firewall, accounting)
- ``demultiplex`` / ``FrameParser``: framed log/exec stream parsing
"""

from proxynode.runtime.adapter import RuntimeAdapter
from proxynode.runtime.demux import (
    DemuxedOutput,
    FrameParser,
    demultiplex,
    drain_with_timeout,
)
from proxynode.runtime.engine import ContainerEngine
from proxynode.runtime.host import CommandResult, HostCommands


__all__ = [
    "CommandResult",
    "ContainerEngine",
    "DemuxedOutput",
    "FrameParser",
    "HostCommands",
    "RuntimeAdapter",
    "demultiplex",
    "drain_with_timeout",
]
