"""
VaultSession: explicit owner of the in-process key material.

A session keeps the unwrapped PEK of every project it unlocked and the
ephemeral tokens it issued. Nothing lives at module level: whoever creates
the session owns it and must ``close()`` it, which revokes pending
ephemeral tokens and drops every cached key.

``run_session`` is the cancellation-aware entry point: it runs a coroutine
with a fresh session, turns SIGINT/SIGTERM into task cancellation and
always closes the session on the way out.

Security Note:
    Unwrapped keys exist in process memory while the session is open.
    Never log them.
"""
import os
import socket
import signal
import asyncio
import getpass
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

from ..exceptions import MissingKey, RedenvError
from ..storage import AbstractStore
from . import keys
from .tokens import IssuedToken, TokenCleanupRegistry, issue_ephemeral_token

logger = logging.getLogger("redenv.vault")

T = TypeVar("T")


def default_author() -> str:
    """Audit identity ``user@host`` used when the caller provides none."""
    try:
        return f"{getpass.getuser()}@{socket.gethostname()}"
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown-user")


class VaultSession:
    """Unlocked keys and pending cleanups for one logical process."""

    def __init__(self, store: AbstractStore, author: Optional[str] = None):
        self.store = store
        self.author = author or default_author()
        self.registry = TokenCleanupRegistry()
        self._keys: dict[str, bytes] = {}
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"<VaultSession author={self.author} "
            f"unlocked={sorted(self._keys)} pending={len(self.registry)}>"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise RedenvError("Vault session is closed", code="SESSION_CLOSED")

    # ------------------------------------------------------------------
    # Key cache
    # ------------------------------------------------------------------

    def is_unlocked(self, project: str) -> bool:
        return project in self._keys

    def remember(self, project: str, pek: bytes) -> None:
        self._check_open()
        self._keys[project] = pek

    def forget(self, project: str) -> bool:
        return self._keys.pop(project, None) is not None

    def key_for(self, project: str) -> bytes:
        """Return the unlocked PEK of ``project``.

        Raises:
            MissingKey: If the project was not unlocked in this session.
        """
        try:
            return self._keys[project]
        except KeyError:
            raise MissingKey(
                f'Project "{project}" is not unlocked.',
                context={"project": project}
            ) from None

    async def unlock(self, project: str, password: str) -> bytes:
        """Unlock with the master password, reusing a cached key if present."""
        self._check_open()
        if project in self._keys:
            return self._keys[project]
        pek = await keys.unlock_with_password(self.store, project, password)
        self._keys[project] = pek
        return pek

    async def unlock_with_token(self, project: str, token_id: str, secret: str) -> bytes:
        self._check_open()
        if project in self._keys:
            return self._keys[project]
        pek = await keys.unlock_with_token(self.store, project, token_id, secret)
        self._keys[project] = pek
        return pek

    async def change_password(self, project: str, old_password: str, new_password: str) -> None:
        self._check_open()
        await keys.change_password(self.store, project, old_password, new_password)
        self.forget(project)

    # ------------------------------------------------------------------
    # Ephemeral tokens
    # ------------------------------------------------------------------

    async def issue_ephemeral_token(
        self,
        project: str,
        ttl_seconds: int,
        name: str = "ephemeral",
        description: str = "",
    ) -> IssuedToken:
        """Issue a token revoked on ``close()`` (or by the store TTL)."""
        self._check_open()
        return await issue_ephemeral_token(
            self.store,
            project,
            self.key_for(project),
            ttl_seconds,
            registry=self.registry,
            name=name,
            description=description,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Revoke pending ephemeral tokens and drop every unlocked key."""
        if self._closed:
            return
        self._closed = True
        if len(self.registry):
            revoked = await self.registry.drain()
            logger.info("Session cleanup revoked %d ephemeral token(s)", revoked)
        self._keys.clear()

    async def __aenter__(self) -> "VaultSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def run_session(
    main: Callable[[VaultSession], Awaitable[T]],
    store: AbstractStore,
    author: Optional[str] = None,
    signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
) -> T:
    """Run ``main`` with a session, cancelling it on termination signals.

    The session is closed whether ``main`` returns, raises or is cancelled.
    """
    loop = asyncio.get_running_loop()
    session = VaultSession(store, author=author)
    task = asyncio.ensure_future(main(session))
    installed = []
    for sig in signals:
        try:
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal %s handler not supported here", sig)
    try:
        return await task
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await session.close()
