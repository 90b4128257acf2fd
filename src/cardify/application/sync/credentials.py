"""Credential providers: the bearer token is opaque to the sync engine."""

from cardify.domain.interfaces import CredentialProvider, LocalStore


class StoredCredentialProvider(CredentialProvider):
    """Reads the token saved in the local store's settings table."""

    def __init__(self, store: LocalStore):
        self._store = store

    async def get_token(self) -> str | None:
        return await self._store.get_auth_token()


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, token: str | None):
        self.token = token

    async def get_token(self) -> str | None:
        return self.token
