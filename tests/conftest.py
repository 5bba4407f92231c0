from __future__ import annotations

import os

# No Redis in tests; the stats cache degrades to direct reads.
os.environ["REDIS_URL"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest

from surveylinks.core.config import LinkUrlConfig, Settings
from surveylinks.db.session import build_engine, build_sessionmaker, create_db_and_tables
from surveylinks.links.gateway import PersistenceGateway
from surveylinks.main import create_app


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        REDIS_URL="",
        MAIN_DOMAIN="surveys.example.com",
        BATCH_CONCURRENCY=4,
        BATCH_BACKOFF_INITIAL_SECONDS=0.001,
        BATCH_BACKOFF_MAX_SECONDS=0.01,
    )


@pytest.fixture
def urls() -> LinkUrlConfig:
    return LinkUrlConfig(main_domain="surveys.example.com", short_url_base="https://surveys.example.com/s")


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'surveylinks.db'}")
    await create_db_and_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def gateway(engine) -> PersistenceGateway:
    return PersistenceGateway(build_sessionmaker(engine))


@pytest.fixture
async def client(gateway, test_settings):
    app = create_app(test_settings, gateway=gateway)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def project(gateway):
    """A project with two attached vendors (codes AAA and BBB)."""
    p = await gateway.create_project(name="Brand tracker", survey_url="https://panel.example.com/s/1")
    vendors = []
    for name, code in (("Alpha Panels", "AAA"), ("Beta Sample", "BBB")):
        v = await gateway.create_vendor(name=name, code=code)
        await gateway.create_project_vendor(p.id, v.id)
        vendors.append(v)
    return p, vendors
