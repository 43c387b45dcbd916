"""
Provisioner - Providers Package

Provides the provider interface and implementations for cloud API communication.
The provider pattern allows swapping between the fake cloud (simulation) and real APIs.
"""

from provisioner.providers.base import Provider, ProviderFactory, ProviderResponse
from provisioner.providers.fake_cloud import FakeCloudProvider

__all__ = ["Provider", "ProviderFactory", "ProviderResponse", "FakeCloudProvider"]
