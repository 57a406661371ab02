"""
Network Policy Layer.

This package classifies connectivity and decides whether a transfer may start
automatically, needs explicit confirmation, or must be refused.
"""

from .connectivity import ConnectivityMonitor
from .policy import NetworkClass, NetworkPolicy, PolicyDecision

__all__ = ["ConnectivityMonitor", "NetworkClass", "NetworkPolicy", "PolicyDecision"]
