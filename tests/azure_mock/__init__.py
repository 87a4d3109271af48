"""Azure API Mock for testing.

This module provides in-memory stand-ins for the provisioner's external
interfaces so that plans and applies run without Azure connectivity.

Key Features:
- InMemoryProvider: a Provider with configurable kinds, error injection
  (transient N times, fatal), delays and call recording
- MockResourceClient: the generic ARM resources API used by AzureProvider,
  with HTTP-status error injection
- MockActionInvoker: answers POST actions such as listKeys

Usage:
    from azure_mock import InMemoryProvider

    provider = InMemoryProvider()
    provider.fail_transient("subnet", times=2)
    result = await Executor(provider).execute(plan, snapshot)
    assert provider.calls_for("subnet")
"""

from .provider import BUCKET, SUBNET, VNET, WEBAPP, InMemoryProvider, ProviderCall
from .resources import MockActionInvoker, MockResource, MockResourceClient, MockResourceState

__all__ = [
    "BUCKET",
    "InMemoryProvider",
    "MockActionInvoker",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "ProviderCall",
    "SUBNET",
    "VNET",
    "WEBAPP",
]
