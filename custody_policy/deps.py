"""FastAPI dependencies."""

from collections.abc import AsyncIterator

from custody_policy.config import settings
from custody_policy.services.custody_client import CustodyClient


async def get_custody_client() -> AsyncIterator[CustodyClient]:
    """One client per request, closed when the response is sent."""
    async with CustodyClient.from_settings(settings) as client:
        yield client
