import httpx
import pytest
import pytest_asyncio

from env_utils import clear_system_properties
from mock_server import start_mock_server


@pytest.fixture(autouse=True)
def _isolated_system_properties():
    clear_system_properties()
    yield
    clear_system_properties()


@pytest.fixture
def mock():
    with start_mock_server() as handle:
        yield handle


@pytest.fixture
def client():
    with httpx.Client(timeout=5) as http:
        yield http


@pytest_asyncio.fixture
async def async_client():
    async with httpx.AsyncClient(timeout=5) as http:
        yield http
