"""
Credential holder for the signed-in user.
"""

import inspect
import json
import logging
from typing import Any, Callable, Dict, Optional

from .errors import LocalPersistenceError
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Holds the current access token and signed-in user.

    The token is cached in memory and mirrored to the key-value store so it
    survives restarts. ``sign_out`` clears everything and fires the sign-out
    hook, which UI code uses to route back to the login screen.
    """

    TOKEN_KEY = "token"
    USER_KEY = "user"
    REFRESH_TOKEN_KEY = "refreshToken"

    def __init__(
        self,
        kv_store: KeyValueStore,
        on_sign_out: Optional[Callable[[], Any]] = None
    ):
        self.kv_store = kv_store
        self.on_sign_out = on_sign_out
        self._token: Optional[str] = None
        self._user: Optional[Dict[str, Any]] = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    async def load(self) -> None:
        """Restore persisted credentials into memory."""
        try:
            self._token = await self.kv_store.get(self.TOKEN_KEY)
            raw_user = await self.kv_store.get(self.USER_KEY)
            self._user = json.loads(raw_user) if raw_user else None
        except (LocalPersistenceError, ValueError) as e:
            logger.error(f"Error loading stored credentials: {e}")
            self._token = None
            self._user = None

    async def set_token(self, token: str) -> None:
        self._token = token
        try:
            await self.kv_store.set(self.TOKEN_KEY, token)
        except LocalPersistenceError as e:
            logger.error(f"Error persisting access token: {e}")

    async def set_user(self, user: Optional[Dict[str, Any]]) -> None:
        self._user = user
        try:
            if user is None:
                await self.kv_store.remove(self.USER_KEY)
            else:
                await self.kv_store.set(self.USER_KEY, json.dumps(user))
        except LocalPersistenceError as e:
            logger.error(f"Error persisting user: {e}")

    async def clear(self) -> None:
        """Forget every stored credential."""
        self._token = None
        self._user = None
        for key in (self.TOKEN_KEY, self.USER_KEY, self.REFRESH_TOKEN_KEY):
            try:
                await self.kv_store.remove(key)
            except LocalPersistenceError as e:
                logger.error(f"Error clearing {key}: {e}")

    async def sign_out(self) -> None:
        """Clear credentials and notify the sign-out hook."""
        await self.clear()
        logger.warning("Credentials cleared, user signed out")

        if self.on_sign_out:
            try:
                result = self.on_sign_out()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in sign-out callback: {e}")
