"""
Credential validation before any sync work.

A run may only start writing once the stored credential has passed three
checks, in order:

  1. an active SyncCredential row exists         else NoActiveCredentialError
  2. expires_at is still in the future (no grace) else CredentialExpiredError
  3. GET /users/self succeeds with the token      else InvalidCredentialError

The probe catches tokens revoked on Dexcom's side while the local expiry
still looks valid. Validation has no side effects.
"""
import logging
from datetime import datetime
from typing import Callable

from cgmsync.dexcom.client import DexcomAPIError, DexcomClient
from cgmsync.dexcom.credentials import CredentialStore
from cgmsync.errors import (
    CredentialExpiredError,
    InvalidCredentialError,
    NoActiveCredentialError,
    VendorUnavailableError,
)
from cgmsync.models.credential import SyncCredential

logger = logging.getLogger(__name__)


class TokenValidator:
    """Checks a user's stored Dexcom credential.

    Usage:
        validator = TokenValidator(store, client_factory)
        credential = await validator.validate(user_id)
    """

    def __init__(
        self,
        store: CredentialStore,
        client_factory: Callable[[str], DexcomClient],
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._store = store
        self._client_factory = client_factory
        self._clock = clock

    def require_active(self, user_id: str) -> SyncCredential:
        """Local checks only: the credential exists and has not expired.

        Raises:
            NoActiveCredentialError, CredentialExpiredError
        """
        credential = self._store.get_active(user_id)
        if credential is None:
            raise NoActiveCredentialError(user_id)
        if credential.expires_at <= self._clock():
            raise CredentialExpiredError(user_id)
        return credential

    async def probe(self, user_id: str, client: DexcomClient) -> None:
        """One identity call against Dexcom with the user's token.

        Raises:
            InvalidCredentialError: Dexcom answered with a non-2xx status.
            VendorUnavailableError: Dexcom could not be reached at all.
        """
        try:
            await client.get_user()
        except DexcomAPIError as exc:
            if exc.status_code is None:
                raise VendorUnavailableError(user_id, exc.detail) from exc
            logger.warning(
                "Dexcom probe rejected credential for user %s: HTTP %s",
                user_id, exc.status_code,
            )
            raise InvalidCredentialError(user_id, exc.status_code) from exc

    async def validate(self, user_id: str) -> SyncCredential:
        """Run all three checks with a short-lived client.

        Returns:
            The active credential.
        """
        credential = self.require_active(user_id)
        async with self._client_factory(credential.access_token) as client:
            await self.probe(user_id, client)
        return credential
