"""
RuntimeClient: containerd access through the `ctr` CLI

The Image Manager shares the node's containerd socket with a sidecar
daemon. Images are staged in containerd before they are pushed to the
registry, so this client only needs load/tag/push/remove plus namespace
cleanup.

Every call goes through `ctr --address <socket> -n <namespace>`; images are
staged in a throw-away namespace per install so concurrent installs never
see each other's images.

Failure mapping (from ctr's stderr):
- socket missing, connection refused, dial timeout -> RuntimeUnavailableError (transient)
- 401/403 from the registry during push -> RegistryAuthError
- anything else -> RuntimeCommandError
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from ...config import get_settings
from ...errors import (
    ConfigurationError,
    RegistryAuthError,
    RuntimeCommandError,
    RuntimeUnavailableError,
)
from ...utils.async_subprocess import SubprocessResult, run_async

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"

_UNAVAILABLE_PATTERNS = re.compile(
    r"connection refused|failed to dial|"
    r"error while dialing|context deadline exceeded|connection reset",
    re.IGNORECASE,
)
_AUTH_PATTERNS = re.compile(r"\b401\b|\b403\b|unauthorized|forbidden", re.IGNORECASE)
_NOT_FOUND_PATTERN = re.compile(r"not found", re.IGNORECASE)


@dataclass
class RuntimeImage:
    """One row of `ctr images ls`."""
    reference: str
    media_type: str
    digest: str

    @property
    def tag(self) -> str:
        name, sep, tag = self.reference.rpartition(":")
        if not sep or "/" in tag:
            return "latest"
        return tag


def parse_image_listing(stdout: str) -> List[RuntimeImage]:
    """
    Parse the output of `ctr images ls`.

    The first line is the header (REF TYPE DIGEST SIZE PLATFORMS LABELS);
    the first three whitespace-separated columns of each row are kept.

    Examples:
        >>> parse_image_listing("REF TYPE DIGEST\\ndocker.io/a/b:v1 application/x sha256:00 1 MiB linux/amd64 -")
        [RuntimeImage(reference='docker.io/a/b:v1', media_type='application/x', digest='sha256:00')]
    """
    images = []
    for line in stdout.splitlines()[1:]:
        columns = line.split()
        if len(columns) < 3:
            continue
        images.append(RuntimeImage(reference=columns[0], media_type=columns[1], digest=columns[2]))
    return images


class RuntimeClient:
    """Thin async client over the containerd control socket."""

    def __init__(self, address: Optional[str] = None, ctr_binary: Optional[str] = None):
        settings = get_settings()
        self.address = address or settings.containerd_address
        self.ctr_binary = ctr_binary or settings.ctr_binary
        self.timeout = settings.runtime_timeout_seconds

    async def _run(self, args: List[str], namespace: str = DEFAULT_NAMESPACE) -> SubprocessResult:
        """
        Run a ctr command and map failures onto the error taxonomy.

        Raises:
            RuntimeUnavailableError: If containerd is not reachable or the call timed out
            RegistryAuthError: If a registry rejected our credentials
            RuntimeCommandError: For any other failure
        """
        cmd = [self.ctr_binary, "--address", self.address, "-n", namespace] + args
        try:
            result = await run_async(cmd, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RuntimeUnavailableError(f"ctr {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise ConfigurationError(f"containerd client '{self.ctr_binary}' not found") from e

        if result.success:
            return result

        stderr = result.stderr.strip()
        # Only the subcommand: push arguments carry credentials
        description = f"ctr {' '.join(args[:2])} failed ({result.returncode}): {stderr}"
        socket_missing = self.address in stderr and "no such file or directory" in stderr.lower()
        if socket_missing or _UNAVAILABLE_PATTERNS.search(stderr):
            raise RuntimeUnavailableError(description)
        if _AUTH_PATTERNS.search(stderr):
            raise RegistryAuthError(description)
        raise RuntimeCommandError(description, stderr=stderr)

    async def ping(self) -> bool:
        """Check that the containerd socket answers."""
        try:
            await self._run(["version"])
        except RuntimeUnavailableError:
            return False
        return True

    # =========================================================================
    # IMAGES
    # =========================================================================

    async def load(
        self,
        reference: Optional[str] = None,
        archive: Optional[str] = None,
        namespace: str = DEFAULT_NAMESPACE,
        plain_http: bool = False,
    ) -> List[RuntimeImage]:
        """
        Materialize an image in containerd.

        Args:
            reference: Image to pull (ignored if archive is given)
            archive: Path of an image tarball to import
            namespace: containerd namespace to load into
            plain_http: Pull over plain HTTP

        Returns:
            Images present in the namespace afterwards
        """
        if archive:
            await self._run(["images", "import", "--no-unpack", archive], namespace)
            logger.info(f"[RUNTIME] Imported {archive} into {namespace}")
        elif reference:
            args = ["images", "pull"]
            if plain_http:
                args.append("--plain-http")
            await self._run(args + [reference], namespace)
            logger.info(f"[RUNTIME] Pulled {reference} into {namespace}")
        else:
            raise ValueError("load() needs a reference or an archive")

        return await self.list_images(namespace)

    async def list_images(self, namespace: str = DEFAULT_NAMESPACE) -> List[RuntimeImage]:
        result = await self._run(["images", "ls"], namespace)
        return parse_image_listing(result.stdout)

    async def tag(self, source: str, target: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        await self._run(["images", "tag", "--force", source, target], namespace)
        logger.debug(f"[RUNTIME] Tagged {source} as {target}")

    async def push(
        self,
        reference: str,
        extra_args: List[str],
        namespace: str = DEFAULT_NAMESPACE
    ) -> None:
        await self._run(["images", "push"] + extra_args + [reference], namespace)
        logger.info(f"[RUNTIME] Pushed {reference}")

    async def remove(self, reference: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        """
        Remove an image reference from containerd.

        Returns:
            True if removed, False if it was not there
        """
        try:
            await self._run(["images", "remove", reference], namespace)
        except RuntimeCommandError as e:
            if _NOT_FOUND_PATTERN.search(e.stderr):
                return False
            raise
        logger.debug(f"[RUNTIME] Removed {reference} from {namespace}")
        return True

    async def remove_namespace(self, namespace: str) -> None:
        await self._run(["namespaces", "remove", namespace])
        logger.debug(f"[RUNTIME] Removed namespace {namespace}")
