import pytest

from ssh_mcp.config import ConnectionConfig
from ssh_mcp.connection import ConnectionManager
from tests.fakes import make_mock_transport


@pytest.fixture
def connection_config():
    return ConnectionConfig(host="host.example.com", username="alice", password="secret")


@pytest.fixture
def make_manager():
    """Factory for a ConnectionManager already holding a mock transport."""

    def factory(channels=(), su_password=None, sudo_password=None):
        config = ConnectionConfig(
            host="host.example.com",
            username="alice",
            password="secret",
            su_password=su_password,
            sudo_password=sudo_password,
        )
        manager = ConnectionManager(config)
        manager._transport = make_mock_transport(channels)
        return manager

    return factory
