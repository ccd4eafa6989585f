import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from keybase.database import build_engine, build_sessionmaker, create_tables
from keybase.logging import configure_logging
from keybase.routers.admin_router import router as admin_router
from keybase.routers.auth_router import router as auth_router
from keybase.routers.pi_router import router as pi_router
from keybase.routers.seller_router import router as seller_router
from keybase.services.pi_network import PiNetworkClient
from keybase.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables(app.state.engine)
    logger.info(
        "%s started (environment=%s, pi_sandbox=%s)",
        app.state.settings.app_name, app.state.settings.environment.value, app.state.settings.pi_sandbox,
    )
    yield
    await app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    pi_client: PiNetworkClient | None = None,
    engine: AsyncEngine | None = None,
) -> FastAPI:
    """Build the API. Run with ``uvicorn keybase.main:create_app --factory``."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.engine = engine or build_engine(settings.database_url, settings.database_echo)
    app.state.sessionmaker = build_sessionmaker(app.state.engine)
    app.state.pi_client = pi_client or PiNetworkClient.from_settings(settings)

    # --- CORS configuration ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(pi_router)
    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(seller_router)

    # --- Health check ---
    @app.get("/")
    async def root():
        return {"status": "OK", "sandbox": settings.pi_sandbox}

    return app
