"""
Matrix Client Pool for appservice identities.

Manages one AsyncClient per Matrix user the bridge acts as: the bot uses the
appservice token directly, puppets get their own token through appservice
login.
"""
import asyncio
import logging
from typing import Dict, Optional

import aiohttp
from nio import AsyncClient

from src.core.errors import SendFailed
from src.core.locks import KeyedLock

logger = logging.getLogger("wechaty_bridge.client_pool")

# Default timeout for all requests
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=10)


def localpart_of(user_id: str) -> str:
    return user_id.split(':')[0].lstrip('@')


class MatrixClientPool:

    def __init__(self, homeserver_url: str, bot_user_id: str, as_token: str):
        self._homeserver = homeserver_url
        self._bot_user_id = bot_user_id
        self._as_token = as_token
        self._clients: Dict[str, AsyncClient] = {}
        self._lock = asyncio.Lock()
        # Logins for different users proceed in parallel
        self._login_locks = KeyedLock()
        logger.info(f"MatrixClientPool initialized with homeserver: {self._homeserver}")

    @property
    def bot_user_id(self) -> str:
        return self._bot_user_id

    async def get_client(self, user_id: Optional[str] = None) -> AsyncClient:
        """Client acting as ``user_id`` (the bot when omitted)"""
        user_id = user_id or self._bot_user_id
        client = self._clients.get(user_id)
        if client is not None:
            return client

        async with self._login_locks.hold(user_id):
            client = self._clients.get(user_id)
            if client is not None:
                return client

            if user_id == self._bot_user_id:
                access_token = self._as_token
            else:
                access_token = await self._appservice_login(user_id)

            async with self._lock:
                client = AsyncClient(homeserver=self._homeserver, user=user_id)
                client.access_token = access_token
                client.user_id = user_id
                self._clients[user_id] = client
            logger.info(f"Created client for {user_id}")
            return client

    async def _appservice_login(self, user_id: str) -> str:
        url = f"{self._homeserver}/_matrix/client/v3/login"
        headers = {"Authorization": f"Bearer {self._as_token}"}
        data = {
            "type": "m.login.application_service",
            "identifier": {"type": "m.id.user", "user": localpart_of(user_id)},
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(url, headers=headers, json=data, timeout=DEFAULT_TIMEOUT) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Appservice login failed for {user_id}: {response.status} - {error_text}")
                    raise SendFailed(f"Cannot act as {user_id}: login failed", status_code=str(response.status))
                result = await response.json()

        access_token = result.get("access_token")
        if not access_token:
            raise SendFailed(f"Login for {user_id} returned no access_token")
        return access_token

    async def register(self, user_id: str) -> bool:
        """Register a user inside the appservice namespace.

        Returns True if created or already registered.
        """
        url = f"{self._homeserver}/_matrix/client/v3/register"
        headers = {"Authorization": f"Bearer {self._as_token}"}
        data = {
            "type": "m.login.application_service",
            "username": localpart_of(user_id),
            "inhibit_login": True,
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(url, headers=headers, json=data, timeout=DEFAULT_TIMEOUT) as response:
                if response.status == 200:
                    logger.info(f"Registered Matrix user: {user_id}")
                    return True
                if response.status == 400:
                    error_data = await response.json()
                    if error_data.get("errcode") == "M_USER_IN_USE":
                        logger.info(f"Matrix user already exists: {user_id}")
                        return True
                error_text = await response.text()
                logger.error(f"Failed to register {user_id}: {response.status} - {error_text}")
                return False

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for user_id, client in clients:
            try:
                await client.close()
            except Exception as e:
                logger.error(f"Error closing client {user_id}: {e}")
        logger.info("All Matrix clients closed")

    def get_active_count(self) -> int:
        return len(self._clients)

    def is_client_active(self, user_id: str) -> bool:
        return user_id in self._clients
