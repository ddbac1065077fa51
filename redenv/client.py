"""
Redenv runtime client.

Loads every secret of one ``(project, environment)`` with a service token,
keeps it in a stale-while-revalidate cache and optionally injects it into
``os.environ``::

    async with Redenv(project="shop", token_id="stk_...", token="redenv_sk_...",
                      redis_url="redis://...") as client:
        await client.load()
        dsn = await client.get("DATABASE_URL")
"""
import os
import logging
from typing import Any, Optional

from .exceptions import RedenvError
from .storage import AbstractStore, RedisStore
from .vault.cache import SWRCache
from .vault.config import ClientConfig
from .vault import keys
from .vault.secrets import fetch_and_decrypt, write_secret

logger = logging.getLogger("redenv.client")


def populate_env(secrets: dict[str, str]) -> int:
    """Inject secrets into ``os.environ``; returns how many were set."""
    for key, value in secrets.items():
        os.environ[key] = value
    logger.debug("Injection complete. %d variables were set.", len(secrets))
    return len(secrets)


class Redenv:
    """Runtime client reading one environment through a service token.

    Args:
        config: Validated client configuration; built from ``options`` and
            the environment when omitted.
        store: Backing store; a ``RedisStore`` on ``config.redis_url`` by default.
        cache: Cache to use, shared caches allow several clients per process.
        **options: ClientConfig fields.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        store: Optional[AbstractStore] = None,
        cache: Optional[SWRCache] = None,
        **options: Any,
    ):
        self.config = config if config is not None else ClientConfig.from_env(**options)
        self._owns_store = store is None
        self.store = store if store is not None else RedisStore(url=self.config.redis_url)
        if cache is None:
            cache = SWRCache(ttl=self.config.cache_ttl, swr=self.config.cache_swr)
        self.cache = cache

    def __repr__(self) -> str:
        return (
            f"<Redenv project={self.config.project} "
            f"environment={self.config.environment} token_id={self.config.token_id}>"
        )

    async def _pek(self) -> bytes:
        # unwrapped on every fetch so that revoking the token takes effect
        return await keys.unlock_with_token(
            self.store,
            self.config.project,
            self.config.token_id,
            self.config.token.get_secret_value(),
        )

    async def _fetch(self) -> dict[str, str]:
        logger.debug(
            "Fetching secrets for %s/%s from source",
            self.config.project, self.config.environment,
        )
        pek = await self._pek()
        secrets = await fetch_and_decrypt(
            self.store, self.config.project, self.config.environment, pek,
        )
        logger.info("Successfully loaded %d secrets.", len(secrets))
        return secrets

    async def _secrets(self) -> dict[str, str]:
        return await self.cache.get(self.config.cache_key, self._fetch)

    async def load(self) -> dict[str, str]:
        """Fetch (or serve from cache) all secrets and inject them into the environment."""
        secrets = await self._secrets()
        if self.config.populate_env:
            populate_env(secrets)
        return dict(secrets)

    async def get_all(self) -> dict[str, str]:
        return dict(await self._secrets())

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return (await self._secrets()).get(key, default)

    async def set(self, key: str, value: str) -> None:
        """Write a secret through the versioned store and drop the cached environment.

        The token id is recorded as the audit identity.
        """
        pek = await self._pek()
        try:
            await write_secret(
                self.store,
                self.config.project,
                self.config.environment,
                key,
                value,
                pek,
                self.config.token_id,
            )
        except RedenvError as err:
            logger.error("Failed to set secret %s: %s", key, err.message)
            raise
        finally:
            self.cache.invalidate(self.config.cache_key)
        logger.info('Successfully set secret for key "%s".', key)

    async def close(self) -> None:
        await self.cache.close()
        if self._owns_store:
            await self.store.close()

    async def __aenter__(self) -> "Redenv":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
