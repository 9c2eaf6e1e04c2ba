"""Fixtures for API integration tests"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock, MagicMock

from app.core.security import create_access_token
from app.main import app
from app.schemas.notification import ChannelOutcome, DeliveryReport
from app.services.container import build_services


@pytest.fixture
def notifier():
    service = MagicMock()
    service.send = AsyncMock(return_value=DeliveryReport(
        notification_id="n-1", outcomes=[ChannelOutcome(channel="EMAIL", success=True)],
    ))
    return service


@pytest.fixture
def services(store, vault, mock_pools, notifier):
    container = build_services(store, vault, mock_pools, notifier=notifier)
    app.state.services = container
    yield container
    del app.state.services


@pytest_asyncio.fixture
async def client(services):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token('user-1', email='owner@example.com')}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {create_access_token('user-2')}"}
