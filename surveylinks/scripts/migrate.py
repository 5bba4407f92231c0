from __future__ import annotations

import asyncio
import os
import subprocess
import time

from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from surveylinks.db.session import build_engine


async def wait_for_db(engine: AsyncEngine, timeout_s: int = 60) -> None:
    """Wait until the database is accepting connections."""
    start = time.time()
    delay = 1.0

    while True:
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return
        except OperationalError:
            if time.time() - start > timeout_s:
                raise
            await asyncio.sleep(delay)
            delay = min(delay * 1.5, 5.0)


async def existing_tables(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return set(names)


def run(cmd: list[str]) -> int:
    p = subprocess.run(cmd, check=False)
    return p.returncode


async def prepare() -> set[str]:
    engine = build_engine()
    try:
        # Wait for DB readiness (important in docker-compose)
        await wait_for_db(engine, timeout_s=int(os.getenv("DB_WAIT_TIMEOUT", "90")))
        return await existing_tables(engine)
    finally:
        await engine.dispose()


def main() -> int:
    tables = asyncio.run(prepare())

    if "alembic_version" not in tables and "survey_links" in tables:
        # Existing schema without alembic tracking: stamp head
        return run(["alembic", "stamp", "head"])
    # Don't stamp on failure; fail fast so schema doesn't drift from alembic_version.
    return run(["alembic", "upgrade", "head"])


if __name__ == "__main__":
    raise SystemExit(main())
