import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest


class _Savepoint:
    """Stands in for session.begin_nested(); lets exceptions through."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def tenant_id():
    return str(uuid.uuid4())


@pytest.fixture
def actor_id():
    return str(uuid.uuid4())


@pytest.fixture
def mock_session():
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.delete = AsyncMock()
    session.begin_nested = MagicMock(side_effect=lambda: _Savepoint())
    return session
