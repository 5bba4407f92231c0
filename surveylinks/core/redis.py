from __future__ import annotations

import logging
from typing import Optional

from redis import asyncio as aioredis
from redis.asyncio import Redis

from surveylinks.core.config import settings

logger = logging.getLogger("surveylinks.redis")

_clients: dict[str, Redis] = {}
_unavailable: set[str] = set()


async def get_redis(url: Optional[str] = None) -> Optional[Redis]:
    """Return a shared Redis client for ``url`` (or None if disabled / not reachable).

    ``url`` defaults to the module settings; apps built with their own Settings pass theirs.
    """
    url = (settings.REDIS_URL if url is None else url or "").strip()
    if not url or url in _unavailable:
        return None
    if url in _clients:
        return _clients[url]
    try:
        client = aioredis.from_url(url, decode_responses=True)
        await client.ping()
    except Exception as exc:
        logger.warning("Redis unavailable: %s", exc)
        _unavailable.add(url)
        return None
    _clients[url] = client
    return client


async def close_redis() -> None:
    for client in list(_clients.values()):
        await client.aclose()
    _clients.clear()
    _unavailable.clear()
