from __future__ import annotations

import httpx

from surveylinks.core.config import Settings
from surveylinks.core.redis import get_redis
from surveylinks.db.session import build_engine, build_sessionmaker, create_db_and_tables
from surveylinks.links.gateway import PersistenceGateway
from surveylinks.links.service import LinkService
from surveylinks.main import create_app


async def test_app_builds_its_store_from_the_given_settings(tmp_path):
    path = tmp_path / "own.db"
    settings = Settings(_env_file=None, REDIS_URL="", DATABASE_URL=f"sqlite+aiosqlite:///{path}")
    app = create_app(settings)
    assert app.state.engine.url.database == str(path)

    await create_db_and_tables(app.state.engine)
    other = build_engine(f"sqlite+aiosqlite:///{path}")
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            assert (await c.post("/projects", json={"name": "Own store"})).status_code == 201

        projects = await PersistenceGateway(build_sessionmaker(other)).list_projects()
        assert [p.name for p in projects] == ["Own store"]
    finally:
        await other.dispose()
        await app.state.engine.dispose()


async def test_injected_gateway_means_no_owned_engine(gateway, test_settings):
    app = create_app(test_settings, gateway=gateway)
    assert app.state.engine is None
    assert app.state.gateway is gateway


async def test_stats_cache_uses_the_service_redis_url(monkeypatch, gateway, test_settings):
    seen = []

    async def fake_get_redis(url=None):
        seen.append(url)
        return None

    monkeypatch.setattr("surveylinks.links.service.get_redis", fake_get_redis)
    settings = test_settings.model_copy(update={"REDIS_URL": "redis://cache.internal:6380/2"})
    svc = LinkService(gateway, settings)
    p = await gateway.create_project(name="P")

    stats = await svc.link_stats(p.id)

    assert stats["total"] == 0
    assert seen == ["redis://cache.internal:6380/2"]


async def test_blank_redis_url_disables_cache():
    assert await get_redis("") is None
    assert await get_redis("   ") is None
