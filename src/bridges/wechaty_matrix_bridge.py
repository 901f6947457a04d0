"""
Wechaty <-> Matrix Bridge

Wires the core components together around one appservice identity.

Responsibilities:
1. One-time setup of config, store and Matrix client (fails fast on a second setup)
2. Creating and removing per-operator BridgeAccounts
3. Entry points for events arriving from either network
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from src.core.config import BridgeConfig
from src.core.errors import BridgeError, DuplicateBridgeSetup, MissingStore
from src.core.identity_storage import IdentityStore
from src.core.message_translator import MessageTranslator
from src.core.puppet_manager import PuppetManager
from src.core.role_classifier import RoleClassifier
from src.core.room_provisioner import RoomProvisioner
from src.core.session_router import BridgeAccount, SessionRouter
from src.matrix.appservice import MatrixAppservice
from src.matrix.client_pool import MatrixClientPool
from src.models.database import create_bridge_engine, get_session_maker, init_database

logger = logging.getLogger("wechaty_bridge.bridge")


class WechatyMatrixBridge:

    def __init__(self):
        self.config: Optional[BridgeConfig] = None
        self.store: Optional[IdentityStore] = None
        self.matrix_client = None
        self.classifier: Optional[RoleClassifier] = None
        self.provisioner: Optional[RoomProvisioner] = None
        self.translator: Optional[MessageTranslator] = None
        self.puppets: Optional[PuppetManager] = None
        self.router: Optional[SessionRouter] = None

    @property
    def is_setup(self) -> bool:
        return self.config is not None

    def setup(self, config: BridgeConfig, store: Optional[IdentityStore], matrix_client) -> None:
        if self.is_setup:
            raise DuplicateBridgeSetup("bridge can not be set up twice")
        if store is None:
            raise MissingStore("an IdentityStore is required")

        self.config = config
        self.store = store
        self.matrix_client = matrix_client
        self.classifier = RoleClassifier(matrix_client)
        self.provisioner = RoomProvisioner(matrix_client, store)
        self.translator = MessageTranslator(matrix_client, store, self.classifier,
                                            preview_length=config.log_preview_length)
        self.puppets = PuppetManager(matrix_client, store, config.puppet_prefix, config.domain)
        self.router = SessionRouter(store, matrix_client, self.classifier)
        logger.info(f"Bridge set up as {matrix_client.get_sender_id()}")

    def _require_setup(self) -> None:
        if not self.is_setup:
            raise BridgeError("bridge is not set up")

    def add_account(self, operator_id: str, wechaty) -> BridgeAccount:
        """Start bridging ``operator_id``'s WeChat connection"""
        self._require_setup()
        account = BridgeAccount(
            operator_id=operator_id,
            wechaty=wechaty,
            matrix_client=self.matrix_client,
            provisioner=self.provisioner,
            translator=self.translator,
            puppets=self.puppets,
        )
        account = self.router.add_account(account)
        account.start()
        return account

    async def remove_account(self, operator_id: str) -> bool:
        self._require_setup()
        return await self.router.remove_account(operator_id)

    def on_wechaty_event(self, operator_id: str, event_name: str, *args) -> Optional[asyncio.Future]:
        self._require_setup()
        return self.router.dispatch_wechaty(operator_id, event_name, *args)

    def on_matrix_event(self, event: Dict[str, Any]) -> Optional[asyncio.Future]:
        self._require_setup()
        return self.router.dispatch_matrix(event)

    def user_exists(self, user_id: str) -> bool:
        """Homeserver user query: puppets we already created"""
        self._require_setup()
        return self.store.get_user(user_id) is not None

    async def close(self) -> None:
        if self.router is not None:
            await self.router.close()
        pool = getattr(self.matrix_client, "pool", None)
        if pool is not None:
            await pool.close_all()


def build_bridge(config: BridgeConfig) -> WechatyMatrixBridge:
    """Create store, Matrix client and bridge from configuration"""
    engine = create_bridge_engine(config.database_url)
    init_database(engine)
    store = IdentityStore(get_session_maker(engine))

    pool = MatrixClientPool(config.homeserver_url, config.bot_user_id, config.as_token)
    matrix_client = MatrixAppservice(pool, config.puppet_namespace_regex)

    bridge = WechatyMatrixBridge()
    bridge.setup(config, store, matrix_client)
    return bridge
