"""
Session Router - one BridgeAccount per bridged WeChat login.

Every account processes its events one at a time, in arrival order, on its
own worker task; accounts run concurrently. Each dispatched event gets a
future that resolves to the handler's result or raises its error.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from urllib.parse import quote

from src.core.errors import SendFailed, UploadFailed
from src.core.identity_storage import IdentityStore
from src.core.message_translator import MessageTranslator, inbound_from_wechaty
from src.core.puppet_manager import PuppetManager
from src.core.role_classifier import RoleClassifier
from src.core.room_provisioner import BRIDGE_NAMESPACE, RoomProvisioner
from src.core.types import Role, SessionState
from src.wechat.types import ScanStatus

logger = logging.getLogger("wechaty_bridge.session_router")

QRCODE_URL = "https://wechaty.js.org/qrcode/{}"

_STOP = object()


def _retrieve(future: asyncio.Future) -> None:
    # Callers may drop the future; its failure was logged by the worker
    if not future.cancelled():
        future.exception()


class BridgeAccount:
    """One operator's WeChat login and the Matrix side it drives"""

    def __init__(
        self,
        operator_id: str,
        wechaty,
        matrix_client,
        provisioner: RoomProvisioner,
        translator: MessageTranslator,
        puppets: PuppetManager,
    ):
        self.operator_id = operator_id
        self.wechaty = wechaty
        self.matrix_client = matrix_client
        self.provisioner = provisioner
        self.translator = translator
        self.puppets = puppets

        self.state = SessionState.LOGGED_OUT
        self.user = None  # logged-in WeChat contact
        self.dm_room_id: Optional[str] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<BridgeAccount(operator={self.operator_id}, state={self.state.value})>"

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"Started session for {self.operator_id}")

    async def stop(self) -> None:
        """Finish queued events, then stop the worker"""
        if not self.running:
            return
        self._queue.put_nowait(_STOP)
        await self._worker
        self._worker = None
        logger.info(f"Stopped session for {self.operator_id}")

    def submit(self, handler: Callable[..., Awaitable[Any]], *args) -> asyncio.Future:
        self.start()
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve)
        self._queue.put_nowait((handler, args, future))
        return future

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                handler, args, future = item
                try:
                    result = await handler(*args)
                except Exception as e:
                    logger.error(f"{handler.__name__} failed for {self.operator_id}: {e}",
                                 extra={"operator": self.operator_id})
                    if isinstance(e, (UploadFailed, SendFailed)):
                        await self._report_failure(e)
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def _report_failure(self, error: Exception) -> None:
        if not self.dm_room_id:
            return
        try:
            await self.matrix_client.send_text(self.dm_room_id, f"Failed to bridge a message: {error}")
        except Exception as e:
            logger.error(f"Could not notify {self.operator_id} of failure: {e}")

    async def direct_message_room(self) -> str:
        """The bot <-> operator room used for notices"""
        if not self.dm_room_id:
            mapping = await self.provisioner.find_or_create_direct_room(
                self.matrix_client.get_sender_id(),
                self.operator_id,
                metadata={"account": self.operator_id},
            )
            self.dm_room_id = mapping.room_id
        return self.dm_room_id

    async def notify(self, text: str) -> str:
        room_id = await self.direct_message_room()
        return await self.matrix_client.send_text(room_id, text)

    # WeChat handlers

    async def on_scan(self, code: str, status: int) -> None:
        status = ScanStatus(status)
        logger.info(f"Scan for {self.operator_id}: {status.name}")
        if status in (ScanStatus.WAITING, ScanStatus.TIMEOUT, ScanStatus.UNKNOWN):
            self.state = SessionState.AWAITING_SCAN
            await self.notify(f"[{status.name}] Scan QR Code to login: {QRCODE_URL.format(quote(code, safe=''))}")
        else:
            await self.notify(f"[{status.name}] QR Code scan status changed")

    async def on_login(self, contact) -> None:
        self.user = contact
        self.state = SessionState.LOGGED_IN
        logger.info(f"{self.operator_id} logged in to WeChat as {contact.name()}")
        await self.notify(f"{contact.name()} login")

    async def on_logout(self, contact) -> None:
        self.user = None
        self.state = SessionState.LOGGED_OUT
        logger.info(f"{self.operator_id} logged out of WeChat ({contact.name()})")
        await self.notify(f"{contact.name()} logout")

    async def on_message(self, message) -> list:
        if self.state is not SessionState.LOGGED_IN:
            logger.warning(f"Message for {self.operator_id} while {self.state.value}, dropped")
            return []

        talker = message.talker()
        if self.user is not None and talker.contact_id == self.user.contact_id:
            # Sent from the operator's own phone; Matrix already has it
            logger.debug(f"Skipping self message for {self.operator_id}")
            return []

        puppet_id = await self.puppets.ensure_puppet(talker)
        wechat_room = message.room()
        if wechat_room is not None:
            room_id = await self._group_room(wechat_room)
            await self._ensure_member(room_id, puppet_id)
        else:
            mapping = await self.provisioner.find_or_create_direct_room(
                self.operator_id,
                puppet_id,
                creator_id=puppet_id,
                metadata={"account": self.operator_id, BRIDGE_NAMESPACE: {"contactId": talker.contact_id}},
            )
            room_id = mapping.room_id

        inbound = await inbound_from_wechaty(message, puppet_id, room_id)
        return await self.translator.to_matrix(inbound, room_id, sender_id=puppet_id)

    async def _group_room(self, wechat_room) -> str:
        participants = [self.operator_id]
        for member in await wechat_room.member_list():
            if self.user is not None and member.contact_id == self.user.contact_id:
                continue
            participants.append(await self.puppets.ensure_puppet(member))
        mapping = await self.provisioner.find_or_create_group_room(
            wechat_room.room_id,
            participants,
            topic=await wechat_room.topic(),
            account=self.operator_id,
        )
        return mapping.room_id

    async def _ensure_member(self, room_id: str, user_id: str) -> None:
        if user_id in await self.provisioner.room_members(room_id):
            return
        await self.matrix_client.invite_user(room_id, user_id)
        await self.matrix_client.join_room(room_id, user_id)

    # Matrix handlers

    async def on_matrix_event(self, event: Dict[str, Any]) -> bool:
        return await self.translator.to_wechat(event, self)


class SessionRouter:
    """Dispatches events from both networks to the owning BridgeAccount"""

    WECHATY_EVENTS = {
        "scan": "on_scan",
        "login": "on_login",
        "logout": "on_logout",
        "message": "on_message",
    }

    def __init__(self, store: IdentityStore, matrix_client, classifier: RoleClassifier):
        self.store = store
        self.matrix_client = matrix_client
        self.classifier = classifier
        self.accounts: Dict[str, BridgeAccount] = {}
        self._tasks: Set[asyncio.Task] = set()

    def add_account(self, account: BridgeAccount) -> BridgeAccount:
        existing = self.accounts.get(account.operator_id)
        if existing is not None:
            logger.warning(f"{account.operator_id} already has a bridge account, keeping it")
            return existing
        self.accounts[account.operator_id] = account
        return account

    def get_account(self, operator_id: str) -> Optional[BridgeAccount]:
        return self.accounts.get(operator_id)

    async def remove_account(self, operator_id: str) -> bool:
        account = self.accounts.pop(operator_id, None)
        if account is None:
            return False
        await account.stop()
        return True

    def dispatch_wechaty(self, operator_id: str, event_name: str, *args) -> Optional[asyncio.Future]:
        """Queue a Wechaty event on the account that owns the connection"""
        account = self.accounts.get(operator_id)
        if account is None:
            logger.warning(f"No bridge account for {operator_id}, dropping {event_name}")
            return None
        try:
            method = self.WECHATY_EVENTS[event_name]
        except KeyError:
            raise ValueError(f"Unknown Wechaty event: {event_name}")
        return account.submit(getattr(account, method), *args)

    def dispatch_matrix(self, event: Dict[str, Any]) -> Optional[asyncio.Future]:
        """Route a Matrix event by the account recorded for its room"""
        if event.get("type") == "m.room.member":
            return self._membership(event)

        room_id = event.get("room_id")
        record = self.store.get_room(room_id) if room_id else None
        account = self.accounts.get(record.get("account")) if record else None
        if account is None:
            logger.debug(f"Ignoring event {event.get('event_id')} for unbridged room {room_id}")
            return None
        return account.submit(account.on_matrix_event, event)

    def _membership(self, event: Dict[str, Any]) -> Optional[asyncio.Future]:
        content = event.get("content") or {}
        invitee = event.get("state_key")
        if content.get("membership") != "invite" or not invitee:
            return None
        if self.classifier.classify(invitee) is Role.USER:
            return None
        task = asyncio.get_running_loop().create_task(
            self.matrix_client.join_room(event["room_id"], invitee)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_join_failure)
        return task

    def _log_join_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Auto-join failed: {error}")

    async def close(self) -> None:
        for operator_id in list(self.accounts):
            await self.remove_account(operator_id)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
