"""Time-bounded verification of identity provider credentials."""

import asyncio

from loguru import logger

from src.bizhub.core.errors import CredentialVerificationError, IdentityProviderError
from src.bizhub.core.models.session import ExternalIdentity
from src.bizhub.core.services.identity_provider import IdentityProvider


class CredentialVerifier:
    """Verifies an external ID token, giving up after ``timeout_seconds``.

    Every failure, including a timeout, is an authentication failure rather
    than a server error.
    """

    def __init__(self, provider: IdentityProvider, timeout_seconds: float = 10.0):
        self._provider = provider
        self._timeout = timeout_seconds

    async def verify(self, token: str) -> ExternalIdentity:
        try:
            return await asyncio.wait_for(
                self._provider.verify_external_token(token), timeout=self._timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("Identity provider verification timed out after {}s", self._timeout)
            raise CredentialVerificationError(reason="timeout") from e
        except IdentityProviderError as e:
            logger.debug("Identity provider rejected token: {}", e)
            raise CredentialVerificationError(reason=str(e)) from e
