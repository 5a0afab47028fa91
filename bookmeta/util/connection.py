from typing import Any, AsyncGenerator

from aiohttp import ClientSession


async def get_connection() -> AsyncGenerator[ClientSession, Any]:
    async with ClientSession() as session:
        yield session
