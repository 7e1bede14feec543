# =============================================================================
# Booth Client -- Token Refresher
# =============================================================================
#
# Silent re-authentication with a small attempt budget.  Once the budget is
# spent the user has to sign in again (or call retry()).
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING

from ._logging import logger
from .constants import TOKEN_REFRESH_MAX_ATTEMPTS

if TYPE_CHECKING:
    from .collaborators import IdentityProvider


class TokenRefresher:
    """Re-fetch the identity through the identity cache.

    Args:
        identity: Identity collaborator to invalidate and refetch.
        max_attempts: Failed refreshes allowed before giving up (default 2).
    """

    def __init__(
        self,
        identity: IdentityProvider,
        max_attempts: int = TOKEN_REFRESH_MAX_ATTEMPTS,
    ) -> None:
        self._identity = identity
        self._max_attempts = max_attempts
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self._max_attempts

    async def refresh(self) -> bool:
        """Invalidate the cached identity and fetch it again.

        Returns True when a usable identity came back. Success resets
        the attempt counter, failure leaves it incremented.
        """
        if self.exhausted:
            logger.info("Max token refresh attempts reached (%d)", self._max_attempts)
            return False

        self._attempts += 1
        logger.info("Attempting silent token refresh (attempt %d)", self._attempts)
        try:
            identity = await self._identity.invalidate_and_refetch()
        except Exception as exc:
            logger.warning("Token refresh failed: %s", exc)
            return False

        if identity is None:
            logger.info("Token refresh failed: no identity returned")
            return False

        logger.info("Token refresh successful")
        self._attempts = 0
        return True

    def reset(self) -> None:
        self._attempts = 0
