"""
Registry Implementation Enumeration

Defines the supported registry backends. The backend is chosen once, at
startup, from the IMPLEMENTATION setting.
"""

from enum import Enum

from ...errors import ConfigurationError


class RegistryImplementation(str, Enum):
    """
    Supported registry backends.

    Attributes:
        ECR: Amazon Elastic Container Registry (token authentication)
        MINIKUBE: Local development registry (plain HTTP, no auth)
    """

    ECR = "ecr"
    MINIKUBE = "minikube"

    @classmethod
    def from_string(cls, value: str) -> "RegistryImplementation":
        """
        Convert a string to RegistryImplementation enum.

        Args:
            value: String value ("ecr" or "minikube", any case)

        Returns:
            RegistryImplementation enum value

        Raises:
            ConfigurationError: If value is not a valid implementation
        """
        value_lower = value.lower().strip()
        for implementation in cls:
            if implementation.value == value_lower:
                return implementation
        valid = ", ".join([i.value for i in cls])
        raise ConfigurationError(
            f"Invalid registry implementation: '{value}'. Valid implementations: {valid}"
        )

    @property
    def requires_auth(self) -> bool:
        return self == RegistryImplementation.ECR

    def __str__(self) -> str:
        return self.value
