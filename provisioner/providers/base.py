"""
Provisioner - Base Provider Interface

Defines the abstract interface that all cloud providers must implement.
This enables swapping between the fake cloud (simulation) and real
provider APIs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProviderResponse:
    """Response from a create/read/update call."""
    provider_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0


class Provider(ABC):
    """
    Abstract base class for provider APIs.

    All providers (fake or real) must implement this interface.
    Failures are reported by raising ProviderError subclasses:
    - TransientProviderError: may be retried within the run
    - ProviderTimeoutError: the call exceeded its timeout
    - ResourceNotFoundError: no resource with that identifier
    """

    def __init__(self, name: str):
        """
        Initialize provider.

        Args:
            name: Provider identifier used in logs
        """
        self.name = name

    @abstractmethod
    def connect(self) -> bool:
        """
        Establish connection to the provider API.

        Returns:
            True if connection successful, False otherwise
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close connection to the provider API."""
        pass

    @abstractmethod
    def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
        address: str,
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        """
        Create a resource.

        Args:
            resource_type: Resource type (network, kubernetes_cluster, ...)
            attributes: Rendered attributes (all references resolved)
            address: Logical address, for logging and diagnostics
            timeout: Seconds after which the call is aborted

        Returns:
            ProviderResponse with assigned identifier and outputs
        """
        pass

    @abstractmethod
    def read(
        self,
        resource_type: str,
        provider_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ProviderResponse]:
        """
        Read a resource.

        Returns:
            ProviderResponse, or None if the resource does not exist
        """
        pass

    @abstractmethod
    def update(
        self,
        resource_type: str,
        provider_id: str,
        attributes: Dict[str, Any],
        address: str,
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        """
        Update a resource in place.

        Returns:
            ProviderResponse with (possibly unchanged) identifier and outputs
        """
        pass

    @abstractmethod
    def delete(
        self,
        resource_type: str,
        provider_id: str,
        address: str,
        timeout: Optional[float] = None,
    ) -> None:
        """Delete a resource."""
        pass


class ProviderFactory:
    """
    Factory for creating providers.

    Usage:
        provider = ProviderFactory.create("fake", latency_seconds=0.1)
    """

    _providers: Dict[str, type] = {}

    @classmethod
    def register(cls, provider_type: str, provider_class: type) -> None:
        """Register a provider type."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create(cls, provider_type: str, **kwargs) -> Provider:
        """
        Create a provider instance.

        Args:
            provider_type: Registered provider name
            **kwargs: Provider-specific arguments

        Raises:
            ValueError: If provider type is not registered
        """
        if provider_type not in cls._providers:
            raise ValueError(
                f"Unknown provider type: {provider_type}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return cls._providers[provider_type](**kwargs)

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider types."""
        return list(cls._providers.keys())
