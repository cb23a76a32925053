"""Multi-context clients for addressing objects on separate cluster endpoints.

Clients: InMemoryClient, KubernetesClient.
"""

from multidc_operator.client.base import (
    NotFoundError,
    RemoteApiError,
    RemoteClient,
    RemoteError,
    TransientError,
    delete_and_confirm,
    exists,
)
from multidc_operator.client.memory import InMemoryClient

__all__ = [
    "InMemoryClient",
    "NotFoundError",
    "RemoteApiError",
    "RemoteClient",
    "RemoteError",
    "TransientError",
    "delete_and_confirm",
    "exists",
]
