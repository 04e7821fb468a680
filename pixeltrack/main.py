from contextlib import asynccontextmanager
from datetime import timedelta
from fastapi import FastAPI
import logging

from .config import Settings, configure_logging
from .database import make_engine, make_sessionmaker, init_db
from .errors import MissingIdentifier
from .geoip import init_geoip
from .recorder import OpenRecorder
from .routes import pixel, metrics, api
from .signals import build_signal_stores

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: create tables and load the GeoIP database
        await init_db(engine)
        await init_geoip(settings.geoip_db_path, settings.maxmind_license_key)
        logger.info(f"Tracker ready, sender signal mode={settings.sender_signal_mode}")

        yield

        await engine.dispose()

    app = FastAPI(title="pixeltrack", docs_url=None, redoc_url=None, lifespan=lifespan)

    signal_stores = build_signal_stores(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = make_sessionmaker(engine)
    app.state.signal_stores = signal_stores
    app.state.signals = signal_stores[settings.sender_signal_mode]
    app.state.recorder = OpenRecorder(
        signals=app.state.signals,
        dedup_window=timedelta(seconds=settings.dedup_window_seconds),
        sender_guard=timedelta(seconds=settings.sender_guard_seconds),
    )

    app.add_exception_handler(MissingIdentifier, pixel.missing_identifier_handler)

    # Include routers
    app.include_router(pixel.router)    # Pixel and signal endpoints (public)
    app.include_router(metrics.router)  # Suppression tuning metrics
    app.include_router(api.router)      # REST API (API key protected)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app
