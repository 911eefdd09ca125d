# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP API for provisioning and inspecting instances."""

from proxynode.api.server import ApiServer


__all__ = ["ApiServer"]
