from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from surveylinks.core.config import Settings, settings as default_settings
from surveylinks.core.errors import SurveyLinkError
from surveylinks.core.redis import close_redis
from surveylinks.db.session import build_engine, build_sessionmaker, create_db_and_tables
from surveylinks.links.gateway import PersistenceGateway
from surveylinks.links.service import LinkService

from surveylinks.modules.links.router import router as links_router
from surveylinks.modules.projects.router import router as projects_router
from surveylinks.modules.qc.router import router as qc_router
from surveylinks.modules.vendors.router import router as vendors_router


logger = logging.getLogger("surveylinks")


def create_app(
    settings: Settings | None = None,
    gateway: PersistenceGateway | None = None,
    create_tables: bool = True,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=(settings.LOG_LEVEL or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title=settings.APP_NAME)
    app.state.settings = settings
    # Without an injected gateway the app owns an engine built from its own settings.
    app.state.engine = None if gateway is not None else build_engine(settings.DATABASE_URL, settings)
    app.state.gateway = gateway or PersistenceGateway(build_sessionmaker(app.state.engine))
    app.state.links = LinkService(app.state.gateway, settings)

    # CORS (Access-Control-Allow-*) - configurable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    )

    # Generated batches can be large JSON bodies
    app.add_middleware(GZipMiddleware, minimum_size=800)

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start = time.perf_counter()
        resp = await call_next(request)
        resp.headers["X-Process-Time-ms"] = f"{(time.perf_counter() - start) * 1000:.2f}"
        return resp

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        resp = await call_next(request)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "SAMEORIGIN"
        resp.headers["Referrer-Policy"] = "same-origin"
        return resp

    @app.exception_handler(SurveyLinkError)
    async def survey_link_exc_handler(request: Request, exc: SurveyLinkError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.message, "kind": exc.kind},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exc_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = f"{field}: {first.get('msg')}" if field else str(first.get("msg") or "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": msg, "kind": "validation"},
        )

    @app.exception_handler(HTTPException)
    async def http_exc_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception", exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    # Routers
    app.include_router(links_router)
    app.include_router(qc_router)
    app.include_router(projects_router)
    app.include_router(vendors_router)

    @app.on_event("startup")
    async def on_startup():
        # Production schemas are managed by "python -m surveylinks.scripts.migrate".
        if create_tables and app.state.engine is not None:
            await create_db_and_tables(app.state.engine)

    @app.on_event("shutdown")
    async def on_shutdown():
        await close_redis()
        if app.state.engine is not None:
            await app.state.engine.dispose()

    @app.get("/health", response_class=JSONResponse)
    async def health():
        try:
            await app.state.gateway.ping()
            db = "ok"
        except SurveyLinkError:
            db = "unavailable"
        return {"status": "ok" if db == "ok" else "degraded", "app": settings.APP_NAME, "database": db}

    return app


app = create_app()
