"""
Pytest configuration and shared fixtures for bridge tests
"""
import asyncio
import itertools
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest

# Import components to test
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

BOT_ID = "@wechaty:matrix.test"


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def bridge_config():
    """Bridge configuration for testing"""
    from src.core.config import BridgeConfig
    return BridgeConfig(
        homeserver_url="http://test-synapse:8008",
        domain="matrix.test",
        sender_localpart="wechaty",
        as_token="test_as_token",
        hs_token="test_hs_token",
        database_url="sqlite:///:memory:",
    )


# ============================================================================
# SQLite Database Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def sqlite_engine():
    """In-memory SQLite engine shared by the test session"""
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool
    from src.models.database import Base, init_database

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False  # Set to True for SQL debugging
    )
    init_database(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def sqlite_store(sqlite_engine):
    """IdentityStore on a clean database for each test"""
    from sqlalchemy.orm import sessionmaker
    from src.core.identity_storage import IdentityStore
    from src.models.bridge_records import RoomRecord, UserRecord

    session_maker = sessionmaker(bind=sqlite_engine, expire_on_commit=False)
    yield IdentityStore(session_maker)

    session = session_maker()
    try:
        session.query(UserRecord).delete()
        session.query(RoomRecord).delete()
        session.commit()
    finally:
        session.close()


# ============================================================================
# Matrix Client Fixtures
# ============================================================================

@pytest.fixture
def mock_matrix_client():
    """Mock MatrixClient: bot is @wechaty, puppets are @wechaty_*"""
    client = Mock()
    counter = itertools.count(1)

    async def create_room(invite, is_direct, creator_id=None, name=None, topic=None):
        # Yield so concurrent callers really interleave
        await asyncio.sleep(0)
        return f"!room{next(counter)}:matrix.test"

    client.get_sender_id = Mock(return_value=BOT_ID)
    client.is_remote_user = Mock(side_effect=lambda user_id: user_id.startswith("@wechaty_"))
    client.create_room = AsyncMock(side_effect=create_room)
    client.send_text = AsyncMock(return_value="$text_event")
    client.send_image = AsyncMock(return_value="$image_event")
    client.upload_content = AsyncMock(return_value="mxc://matrix.test/uploaded")
    client.get_joined_members = AsyncMock(return_value=[])
    client.register_puppet = AsyncMock(return_value=True)
    client.join_room = AsyncMock(return_value=True)
    client.invite_user = AsyncMock(return_value=True)
    client.pool = None
    return client


@pytest.fixture
def mock_aiohttp_session():
    """Mock aiohttp ClientSession for HTTP requests"""
    # Don't use spec= because aiohttp.ClientSession may already be mocked
    session = AsyncMock()
    session.__aenter__.return_value = session
    session.__aexit__.return_value = None

    # Mock response object
    response = AsyncMock()
    response.status = 200
    response.json = AsyncMock(return_value={"access_token": "puppet_token"})
    response.text = AsyncMock(return_value="OK")
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)

    session.post = Mock(return_value=response)
    session.response = response
    return session


# ============================================================================
# Wechaty Fixtures
# ============================================================================

@pytest.fixture
def make_contact():
    """Factory for Wechaty contact mocks"""
    def _make(contact_id="wxid_alice", name="Alice"):
        contact = Mock()
        contact.contact_id = contact_id
        contact.name = Mock(return_value=name)
        contact.say = AsyncMock()
        return contact
    return _make


@pytest.fixture
def make_message(make_contact):
    """Factory for Wechaty message mocks (text by default)"""
    def _make(text="hi", message_type=7, talker=None, room=None, file_box=None):
        message = Mock()
        message.text = Mock(return_value=text)
        message.type = Mock(return_value=message_type)
        message.talker = Mock(return_value=talker or make_contact())
        message.room = Mock(return_value=room)
        message.to_file_box = AsyncMock(return_value=file_box)
        return message
    return _make


@pytest.fixture
def make_file_box():
    def _make(data=b"\x89PNG...", name="image.png", mime_type="image/png"):
        file_box = Mock()
        file_box.name = name
        file_box.mime_type = mime_type
        file_box.to_bytes = AsyncMock(return_value=data)
        return file_box
    return _make


@pytest.fixture
def mock_wechaty(make_contact):
    """Mock Wechaty client resolving contacts and rooms by id"""
    wechaty = Mock()
    wechaty.contacts = {}
    wechaty.rooms = {}

    async def find_contact(contact_id):
        return wechaty.contacts.get(contact_id)

    async def find_room(room_id):
        return wechaty.rooms.get(room_id)

    wechaty.find_contact = AsyncMock(side_effect=find_contact)
    wechaty.find_room = AsyncMock(side_effect=find_room)
    return wechaty


# ============================================================================
# Helper Fixtures
# ============================================================================

@pytest.fixture
def capture_logs(caplog):
    """Fixture to capture and analyze logs"""
    caplog.set_level("DEBUG")
    return caplog
