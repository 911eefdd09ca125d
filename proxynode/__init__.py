# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Host node agent for per-tenant proxy containers.

Provisions proxy containers on the local container engine, keeps a durable
registry of what is running, and periodically meters each instance's
network usage for an external billing collector.
"""
