"""
Single-flight cache for the registry push token.

The token is the only mutable state the Image Manager shares between
requests. At most one refresh is in flight at any time: concurrent callers
await the same task. Callers await it through asyncio.shield, so a request
cancelled by a client disconnect never cancels the shared refresh.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ...schemas import RegistryToken

logger = logging.getLogger(__name__)


class TokenCache:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[RegistryToken]],
        skew_seconds: float = 0
    ):
        self._fetch = fetch
        self._skew = skew_seconds
        self._token: Optional[RegistryToken] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def token(self) -> Optional[RegistryToken]:
        return self._token

    async def get(self) -> RegistryToken:
        """Get a token that is not about to expire, refreshing if needed."""
        token = self._token
        if token is not None and token.is_fresh(self._skew):
            return token
        return await self._refresh()

    async def refresh(self, stale: Optional[RegistryToken] = None) -> RegistryToken:
        """
        Replace a token the registry rejected.

        If another caller already replaced `stale`, the newer token is
        returned without another round trip.
        """
        if stale is not None and self._token is not None and self._token is not stale:
            return self._token
        self._token = None
        return await self._refresh()

    async def _refresh(self) -> RegistryToken:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._run_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> RegistryToken:
        try:
            self.refresh_count += 1
            logger.info("[REGISTRY] Refreshing registry token")
            token = await self._fetch()
            self._token = token
            return token
        finally:
            self._refresh_task = None
