"""Cluster resource store.

The orchestrator talks to the control plane only through the ResourceStore
protocol. KubernetesStore is the live implementation; tests use an
in-memory fake.
"""

from store.base import AlreadyExistsError, NotFoundError, ResourceStore, StoreError

__all__ = [
    'AlreadyExistsError',
    'NotFoundError',
    'ResourceStore',
    'StoreError',
]
