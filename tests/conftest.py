from __future__ import annotations

from typing import AsyncIterator

import pytest
import pytest_asyncio

from market_moder.storage.sqlite import SQLiteStorage
from tests.factories import Components, FrozenClock, make_components


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def storage() -> AsyncIterator[SQLiteStorage]:
    store = SQLiteStorage(":memory:")
    await store.connect()
    try:
        yield store
    finally:
        await store.disconnect()


@pytest.fixture
def components(storage: SQLiteStorage, clock: FrozenClock) -> Components:
    return make_components(storage, clock)
