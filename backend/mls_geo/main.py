from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mls_geo.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Starting MLS geo enrichment API", env=settings.app_env)
    for warning in settings.validate_production():
        logger.warning("Configuration warning", detail=warning)

    from mls_geo.database import create_all_tables
    import mls_geo.models  # noqa: F401  register models
    await create_all_tables()

    db_type = "sqlite" if settings.is_sqlite else "supabase/postgresql"
    logger.info("Database ready", backend=db_type)

    yield

    # Running jobs save their progress when cancelled
    from mls_geo.tasks.runner import cancel_all
    await cancel_all()

    from mls_geo.api.deps import get_processor
    await get_processor().close()
    logger.info("Shutting down MLS geo enrichment API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="MLS Geo Enrichment API",
        description="Enriches MLS listing spreadsheets with coordinates, neighborhoods and communities.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from mls_geo.api.v1.router import api_router

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Database connectivity plus which providers are configured."""
        from sqlalchemy import text
        from mls_geo.api.deps import get_processor
        from mls_geo.database import async_session

        processor = get_processor()
        result = {
            "status": "healthy",
            "version": "1.0.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "unknown",
            "providers": {
                "mapbox": bool(settings.mapbox_access_token),
                "geocodio": bool(settings.geocodio_api_key),
                "gemini": bool(settings.gemini_api_key) and settings.enrichment_enabled,
            },
            "storage_available": settings.storage_available,
            "processing": processor.is_running,
        }

        try:
            async with async_session() as session:
                await session.execute(text("SELECT 1"))
                result["database"] = "connected"
        except Exception as e:
            result["status"] = "degraded"
            result["database"] = f"error: {str(e)[:100]}"

        return result

    return app


app = create_app()
