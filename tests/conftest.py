import aiohttp
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.fakes import FakeArchive


@pytest_asyncio.fixture
async def archive():
    fake = FakeArchive()
    server = TestServer(fake.app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    try:
        yield fake
    finally:
        await server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s
