"""
Unit tests for BridgeAccount and SessionRouter
"""
import asyncio
import gc
from unittest.mock import AsyncMock, Mock

import pytest

from src.core.errors import SendFailed
from src.core.message_translator import MessageTranslator
from src.core.puppet_manager import PuppetManager
from src.core.role_classifier import RoleClassifier
from src.core.room_provisioner import RoomProvisioner
from src.core.session_router import BridgeAccount, SessionRouter
from src.core.types import SessionState
from src.wechat.types import ScanStatus

BOT_ID = "@wechaty:matrix.test"
OPERATOR_ID = "@huan:matrix.test"
OTHER_OPERATOR_ID = "@bob:matrix.test"


@pytest.fixture
def classifier(mock_matrix_client):
    return RoleClassifier(mock_matrix_client)


@pytest.fixture
def make_account(mock_matrix_client, sqlite_store, classifier, mock_wechaty):
    provisioner = RoomProvisioner(mock_matrix_client, sqlite_store)
    translator = MessageTranslator(mock_matrix_client, sqlite_store, classifier)
    puppets = PuppetManager(mock_matrix_client, sqlite_store, "wechaty", "matrix.test")

    def _make(operator_id=OPERATOR_ID):
        return BridgeAccount(
            operator_id=operator_id,
            wechaty=mock_wechaty,
            matrix_client=mock_matrix_client,
            provisioner=provisioner,
            translator=translator,
            puppets=puppets,
        )
    return _make


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def router(sqlite_store, mock_matrix_client, classifier):
    return SessionRouter(sqlite_store, mock_matrix_client, classifier)


def sent_texts(mock_matrix_client):
    return [c.args[1] for c in mock_matrix_client.send_text.await_args_list]


@pytest.mark.sqlite
@pytest.mark.asyncio
class TestAccountLifecycle:

    async def test_scan_waiting_sends_qr_link(self, account, mock_matrix_client):
        await account.submit(account.on_scan, "https://login.weixin.qq.com/l/abc", ScanStatus.WAITING)

        assert account.state is SessionState.AWAITING_SCAN
        assert sent_texts(mock_matrix_client) == [
            "[WAITING] Scan QR Code to login: "
            "https://wechaty.js.org/qrcode/https%3A%2F%2Flogin.weixin.qq.com%2Fl%2Fabc"
        ]
        # Notices go to the bot <-> operator room
        invite = mock_matrix_client.create_room.call_args.kwargs["invite"]
        assert sorted(invite) == sorted([BOT_ID, OPERATOR_ID])
        await account.stop()

    async def test_scan_confirmed_keeps_state(self, account, mock_matrix_client):
        await account.submit(account.on_scan, "code", ScanStatus.CONFIRMED)

        assert account.state is SessionState.LOGGED_OUT
        assert sent_texts(mock_matrix_client) == ["[CONFIRMED] QR Code scan status changed"]
        await account.stop()

    async def test_login_then_logout(self, account, mock_matrix_client, make_contact):
        me = make_contact("wxid_huan", "Huan")

        await account.submit(account.on_login, me)
        assert account.state is SessionState.LOGGED_IN
        assert account.user is me

        await account.submit(account.on_logout, me)
        assert account.state is SessionState.LOGGED_OUT
        assert account.user is None
        assert sent_texts(mock_matrix_client) == ["Huan login", "Huan logout"]
        # One DM room serves every notice
        assert mock_matrix_client.create_room.await_count == 1
        await account.stop()

    async def test_dm_room_recorded_for_operator(self, account, sqlite_store):
        room_id = await account.submit(account.direct_message_room)

        assert sqlite_store.get_room(room_id)["account"] == OPERATOR_ID
        await account.stop()


@pytest.mark.asyncio
class TestAccountQueue:

    async def test_events_handled_in_arrival_order(self, account):
        handled = []

        async def handler(n, delay):
            await asyncio.sleep(delay)
            handled.append(n)
            return n

        futures = [account.submit(handler, n, delay) for n, delay in [(1, 0.03), (2, 0), (3, 0.01)]]
        results = await asyncio.gather(*futures)

        assert handled == [1, 2, 3]
        assert results == [1, 2, 3]
        await account.stop()

    async def test_handler_error_reaches_future(self, account):
        async def handler():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await account.submit(handler)

        # The worker survives a failed event
        async def ok():
            return "ok"
        assert await account.submit(ok) == "ok"
        await account.stop()

    async def test_send_failure_is_reported_to_operator(self, account, mock_matrix_client):
        account.dm_room_id = "!dm:matrix.test"

        async def handler():
            raise SendFailed("WeChat rejected message")

        with pytest.raises(SendFailed):
            await account.submit(handler)

        mock_matrix_client.send_text.assert_awaited_once()
        room_id, text = mock_matrix_client.send_text.await_args.args
        assert room_id == "!dm:matrix.test"
        assert "WeChat rejected message" in text
        await account.stop()

    async def test_stop_drains_queue(self, account):
        handled = []

        async def handler(n):
            handled.append(n)

        for n in range(3):
            account.submit(handler, n)
        await account.stop()

        assert handled == [0, 1, 2]
        assert account.running is False

    async def test_dropped_future_failure_is_retrieved(self, account):
        loop = asyncio.get_running_loop()
        reports = []
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda loop, context: reports.append(context))
        try:
            async def handler():
                raise ValueError("boom")

            account.submit(handler)
            await account.stop()
            gc.collect()
        finally:
            loop.set_exception_handler(previous)

        assert reports == []


@pytest.mark.sqlite
@pytest.mark.asyncio
class TestWechatMessages:

    async def test_dropped_while_logged_out(self, account, mock_matrix_client, make_message):
        assert await account.submit(account.on_message, make_message()) == []

        mock_matrix_client.register_puppet.assert_not_awaited()
        await account.stop()

    async def test_direct_message_creates_puppet_and_room(
        self, account, mock_matrix_client, sqlite_store, make_contact, make_message,
    ):
        await account.submit(account.on_login, make_contact("wxid_huan", "Huan"))
        mock_matrix_client.send_text.reset_mock()

        alice = make_contact("wxid_alice", "Alice")
        ops = await account.submit(account.on_message, make_message(text="hi", talker=alice))

        puppet_id = mock_matrix_client.register_puppet.await_args.args[0]
        assert puppet_id.startswith("@wechaty_")
        assert mock_matrix_client.register_puppet.await_args.kwargs["display_name"] == "Alice"
        assert len(ops) == 1
        mock_matrix_client.send_text.assert_awaited_once_with(ops[0].room_id, "hi", sender_id=puppet_id)

        # The puppet creates the DM with the operator
        assert mock_matrix_client.create_room.call_args.kwargs["creator_id"] == puppet_id
        record = sqlite_store.get_room(ops[0].room_id)
        assert record["account"] == OPERATOR_ID
        assert record["wechaty"]["contactId"] == "wxid_alice"
        await account.stop()

    async def test_second_message_reuses_puppet_and_room(
        self, account, mock_matrix_client, make_contact, make_message,
    ):
        await account.submit(account.on_login, make_contact("wxid_huan", "Huan"))
        alice = make_contact("wxid_alice", "Alice")

        first = await account.submit(account.on_message, make_message(text="one", talker=alice))
        second = await account.submit(account.on_message, make_message(text="two", talker=alice))

        assert first[0].room_id == second[0].room_id
        assert mock_matrix_client.register_puppet.await_count == 1
        # Login notice room plus the Alice DM
        assert mock_matrix_client.create_room.await_count == 2
        await account.stop()

    async def test_self_message_is_skipped(self, account, mock_matrix_client, make_contact, make_message):
        me = make_contact("wxid_huan", "Huan")
        await account.submit(account.on_login, me)
        mock_matrix_client.send_text.reset_mock()

        assert await account.submit(account.on_message, make_message(talker=me)) == []
        mock_matrix_client.send_text.assert_not_awaited()
        await account.stop()

    async def test_group_message(self, account, mock_matrix_client, sqlite_store, make_contact, make_message):
        me = make_contact("wxid_huan", "Huan")
        alice = make_contact("wxid_alice", "Alice")
        bob = make_contact("wxid_bob", "Bob")
        wechat_room = Mock()
        wechat_room.room_id = "room_1@chatroom"
        wechat_room.topic = AsyncMock(return_value="Friends")
        wechat_room.member_list = AsyncMock(return_value=[me, alice, bob])
        await account.submit(account.on_login, me)

        ops = await account.submit(account.on_message, make_message(text="hello all", talker=alice, room=wechat_room))

        kwargs = mock_matrix_client.create_room.call_args.kwargs
        assert kwargs["name"] == "Friends"
        assert kwargs["is_direct"] is False
        assert OPERATOR_ID in kwargs["invite"]
        assert len(kwargs["invite"]) == 3
        assert sqlite_store.get_room(ops[0].room_id)["wechaty"]["roomId"] == "room_1@chatroom"
        # The talker is not a joined member yet, so it is invited and joined
        puppet_id = ops[0].sender_id
        mock_matrix_client.invite_user.assert_awaited_with(ops[0].room_id, puppet_id)
        mock_matrix_client.join_room.assert_awaited_with(ops[0].room_id, puppet_id)
        await account.stop()


@pytest.mark.sqlite
@pytest.mark.asyncio
class TestMultipleAccounts:

    async def test_stuck_account_does_not_block_another(self, make_account, mock_matrix_client, make_contact):
        stuck = asyncio.Event()

        async def send_text(room_id, text, **kwargs):
            if room_id == "!stuck:matrix.test":
                await stuck.wait()
            return "$text_event"

        mock_matrix_client.send_text.side_effect = send_text
        first = make_account(OPERATOR_ID)
        second = make_account(OTHER_OPERATOR_ID)
        first.dm_room_id = "!stuck:matrix.test"
        second.dm_room_id = "!ok:matrix.test"

        blocked = first.submit(first.on_login, make_contact("wxid_huan", "Huan"))
        await asyncio.wait_for(second.submit(second.on_login, make_contact("wxid_bob", "Bob")), 1)

        assert second.state is SessionState.LOGGED_IN
        assert not blocked.done()

        stuck.set()
        await asyncio.wait_for(blocked, 1)
        await first.stop()
        await second.stop()

    async def test_shared_group_gets_a_room_per_account(
        self, make_account, mock_matrix_client, sqlite_store, make_contact, make_message,
    ):
        huan = make_contact("wxid_huan", "Huan")
        bob = make_contact("wxid_bob", "Bob")
        alice = make_contact("wxid_alice", "Alice")
        wechat_room = Mock()
        wechat_room.room_id = "room_1@chatroom"
        wechat_room.topic = AsyncMock(return_value="Friends")
        wechat_room.member_list = AsyncMock(return_value=[huan, bob, alice])

        first = make_account(OPERATOR_ID)
        second = make_account(OTHER_OPERATOR_ID)
        await first.submit(first.on_login, huan)
        await second.submit(second.on_login, bob)

        first_ops, second_ops = await asyncio.gather(
            first.submit(first.on_message, make_message(text="hello", talker=alice, room=wechat_room)),
            second.submit(second.on_message, make_message(text="hello", talker=alice, room=wechat_room)),
        )

        assert first_ops[0].room_id != second_ops[0].room_id
        group_invites = [
            c.kwargs["invite"] for c in mock_matrix_client.create_room.call_args_list
            if c.kwargs["name"] == "Friends"
        ]
        assert len(group_invites) == 2
        assert any(OPERATOR_ID in invite and OTHER_OPERATOR_ID not in invite for invite in group_invites)
        assert any(OTHER_OPERATOR_ID in invite and OPERATOR_ID not in invite for invite in group_invites)
        assert sqlite_store.get_room(first_ops[0].room_id)["account"] == OPERATOR_ID
        assert sqlite_store.get_room(second_ops[0].room_id)["account"] == OTHER_OPERATOR_ID

        # A later message in the group reuses each account's own room
        again = await first.submit(first.on_message, make_message(text="again", talker=alice, room=wechat_room))
        assert again[0].room_id == first_ops[0].room_id
        await first.stop()
        await second.stop()


@pytest.mark.sqlite
@pytest.mark.asyncio
class TestSessionRouter:

    async def test_duplicate_account_keeps_first(self, router, make_account):
        first = router.add_account(make_account())
        second = router.add_account(make_account())

        assert second is first
        assert router.get_account(OPERATOR_ID) is first

    async def test_dispatch_wechaty(self, router, account, make_contact):
        router.add_account(account)

        await router.dispatch_wechaty(OPERATOR_ID, "login", make_contact("wxid_huan", "Huan"))

        assert account.state is SessionState.LOGGED_IN
        await router.close()

    async def test_dispatch_wechaty_unknown_account(self, router):
        assert router.dispatch_wechaty("@nobody:matrix.test", "login", Mock()) is None

    async def test_dispatch_wechaty_unknown_event(self, router, account):
        router.add_account(account)

        with pytest.raises(ValueError):
            router.dispatch_wechaty(OPERATOR_ID, "friendship", Mock())

    async def test_matrix_event_routed_by_room_account(self, router, account, sqlite_store):
        router.add_account(account)
        account.translator.to_wechat = AsyncMock(return_value=True)
        sqlite_store.put_room("!dm:matrix.test", {"account": OPERATOR_ID})
        event = {"type": "m.room.message", "room_id": "!dm:matrix.test", "sender": OPERATOR_ID,
                 "content": {"msgtype": "m.text", "body": "hi"}}

        assert await router.dispatch_matrix(event) is True
        account.translator.to_wechat.assert_awaited_once_with(event, account)
        await router.close()

    async def test_matrix_event_in_unknown_room_ignored(self, router, account):
        router.add_account(account)
        event = {"type": "m.room.message", "room_id": "!elsewhere:matrix.test", "sender": OPERATOR_ID}

        assert router.dispatch_matrix(event) is None

    async def test_puppet_invite_is_accepted(self, router, mock_matrix_client):
        event = {"type": "m.room.member", "room_id": "!new:matrix.test", "state_key": "@wechaty_0123:matrix.test",
                 "content": {"membership": "invite"}}

        assert await router.dispatch_matrix(event) is True
        mock_matrix_client.join_room.assert_awaited_once_with("!new:matrix.test", "@wechaty_0123:matrix.test")

    async def test_user_invite_is_ignored(self, router, mock_matrix_client):
        event = {"type": "m.room.member", "room_id": "!new:matrix.test", "state_key": "@alice:matrix.test",
                 "content": {"membership": "invite"}}

        assert router.dispatch_matrix(event) is None
        mock_matrix_client.join_room.assert_not_awaited()

    async def test_failed_auto_join_is_logged(self, router, mock_matrix_client, capture_logs):
        mock_matrix_client.join_room.side_effect = SendFailed("join refused")
        event = {"type": "m.room.member", "room_id": "!new:matrix.test", "state_key": "@wechaty_0123:matrix.test",
                 "content": {"membership": "invite"}}

        router.dispatch_matrix(event)
        await router.close()

        assert "Auto-join failed: join refused" in capture_logs.text

    async def test_remove_account_stops_worker(self, router, account):
        router.add_account(account)
        account.start()

        assert await router.remove_account(OPERATOR_ID) is True
        assert account.running is False
        assert await router.remove_account(OPERATOR_ID) is False
