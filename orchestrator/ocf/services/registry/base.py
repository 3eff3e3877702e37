"""
Base registry backend interface.

This module defines the abstract base class that both registry backends
implement. The Registry Manager only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ...schemas import ImageRecord, RegistryToken


class BaseRegistryBackend(ABC):
    """
    Abstract base class for registry backends.

    Backends do not retry: they raise TransientError subclasses for failures
    worth retrying and leave the policy to the Registry Manager.
    """

    def __init__(self, registry: str, repository: str):
        self.registry = registry
        self.repository = repository
        self.validate_settings()

    @property
    def repository_reference(self) -> str:
        return f"{self.registry}/{self.repository}"

    def reference_for(self, tag: str) -> str:
        return f"{self.repository_reference}:{tag}"

    @abstractmethod
    def validate_settings(self) -> None:
        """
        Validate that every setting this backend needs is present.

        Raises:
            ConfigurationError: If required settings are missing
        """
        pass

    @abstractmethod
    async def authenticate(self) -> Optional[RegistryToken]:
        """
        Exchange credentials for a push token.

        Returns:
            RegistryToken, or None if the registry needs no authentication

        Raises:
            RegistryAuthError: If the credentials are rejected
        """
        pass

    @abstractmethod
    def push_arguments(self, token: Optional[RegistryToken]) -> List[str]:
        """Extra `ctr images push` arguments for this registry."""
        pass

    @abstractmethod
    async def list_images(self) -> List[ImageRecord]:
        pass

    @abstractmethod
    async def get_image(self, tag: str) -> Optional[ImageRecord]:
        """
        Get one image by tag.

        Returns:
            ImageRecord, or None if the tag does not exist
        """
        pass

    @abstractmethod
    async def delete_image(self, tag: str) -> bool:
        """
        Delete one image by tag.

        Returns:
            True if deleted, False if it did not exist
        """
        pass
