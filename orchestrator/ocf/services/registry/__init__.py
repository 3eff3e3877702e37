"""
Registry Module

- RegistryManager: install/uninstall with retry, single-flight token refresh
- EcrRegistryBackend / LocalRegistryBackend: the two interchangeable backends
- RuntimeClient: containerd access through `ctr`
"""

from .base import BaseRegistryBackend
from .implementation import RegistryImplementation
from .manager import RegistryManager, create_registry_manager, get_registry_manager
from .runtime import RuntimeClient
