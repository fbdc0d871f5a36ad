# hipop_billing/app.py
"""
HiPop Billing API

- Usage routes under /api/usage
- Health check at GET /health (liveness probe)
- Readiness check at GET /ready (database reachable, indexes ensured)

Run locally:
    uvicorn hipop_billing.app:app --port 8080
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from hipop_billing.config import database
from hipop_billing.config.settings import Settings, get_settings
from hipop_billing.engine import EntitlementEngine
from hipop_billing.errors import BillingError
from hipop_billing.logs.logging_config import setup_logging
from hipop_billing.routes.usage import router as usage_router

logger = logging.getLogger("hipop_billing.app")

APP_NAME = "HiPop Billing"


def create_app(settings: Optional[Settings] = None, engine: Optional[EntitlementEngine] = None) -> FastAPI:
    """
    Build the API app. Pass `engine` to skip database wiring (tests); otherwise
    a Motor client is created on startup and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, as_json=settings.logs_as_json)
        app.state.ready = False
        app.state.startup_error = None
        client = None

        if engine is not None:
            app.state.engine = engine
            app.state.ready = True
        else:
            client = database.create_client(settings)
            app.state.engine = EntitlementEngine(database.get_database(client, settings), settings)
            try:
                await database.verify_connection(client, settings)
                await app.state.engine.ensure_indexes()
                app.state.ready = True
                logger.info(f"{APP_NAME} API ready (env={settings.env})")
            except BillingError as e:
                # Keep serving; /ready reports the failure to the orchestrator
                app.state.startup_error = str(e)
                logger.critical(f"Startup failed: {e}")

        try:
            yield
        finally:
            app.state.ready = False
            await app.state.engine.aclose()
            if client is not None:
                client.close()
            logger.info(f"Shutting down {APP_NAME} API")

    app = FastAPI(title=APP_NAME, lifespan=lifespan)
    app.include_router(usage_router)

    @app.get("/health", tags=["health"])
    async def health_check():
        return {"status": "healthy", "service": APP_NAME}

    @app.get("/ready", tags=["health"])
    async def readiness_check():
        if getattr(app.state, "ready", False):
            return {"status": "ready"}
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "error": getattr(app.state, "startup_error", None)},
        )

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "hipop_billing.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8080")),
        reload=os.getenv("ENV", "development").lower() != "production",
    )
