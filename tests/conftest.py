import asyncio

import pytest

from order_agent.memory_store import MemoryStore

from helpers import seed_store


@pytest.fixture
def store():
    """A MemoryStore holding one restaurant, its zone, catalog and agent."""
    return asyncio.run(seed_store(MemoryStore()))


@pytest.fixture
def empty_store():
    return MemoryStore()
