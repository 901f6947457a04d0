"""
Pytest configuration and fixtures for integration tests

These fixtures wire a complete bridge around the in-memory SQLite store
without requiring a live Matrix homeserver or Wechaty puppet service.
"""
import pytest

from src.bridges.wechaty_matrix_bridge import WechatyMatrixBridge


@pytest.fixture
def bridge(bridge_config, sqlite_store, mock_matrix_client):
    """Bridge set up with a real store and a mocked homeserver"""
    bridge = WechatyMatrixBridge()
    bridge.setup(bridge_config, sqlite_store, mock_matrix_client)
    return bridge


@pytest.fixture
def operator_contact(make_contact):
    """The WeChat account the operator logs in with"""
    return make_contact("wxid_huan", "Huan")
