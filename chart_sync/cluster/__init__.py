"""Clients for reading and mutating objects in a kubernetes cluster."""

from .client import ClusterClient
from .in_memory import InMemoryCluster
from .kubectl import KubectlClient

__all__ = [
    "ClusterClient",
    "InMemoryCluster",
    "KubectlClient",
]
