import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings, settings as default_settings
from core.database import create_db_and_tables
from core.errors import BillingError
from routes.billing import router as billing_router
from routes.organization import router as organization_router
from services.container import BillingServices, build_services

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("teammove")


# =========================================
# 🧹 Background sweeper
# =========================================
async def run_periodic_sweep(billing: BillingServices, interval_seconds: int):
    """Expire finished plans and send renewal reminders on a fixed interval."""
    while True:
        try:
            await run_in_threadpool(billing.sweeper.run_once)
        except Exception:
            logger.exception("❌ Background sweep failed")
        await asyncio.sleep(interval_seconds)


def create_app(app_settings: Optional[Settings] = None, billing: Optional[BillingServices] = None) -> FastAPI:
    app_settings = app_settings or default_settings

    # =========================================
    # 🏁 Lifespan (DB initialization + sweeper)
    # =========================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = billing or build_services(app_settings)
        create_db_and_tables(services.engine)
        app.state.billing = services
        logger.info("✅ Database tables created on startup.")

        sweep_task = None
        if app_settings.SWEEPER_ENABLED:
            sweep_task = asyncio.create_task(run_periodic_sweep(services, app_settings.SWEEP_INTERVAL_SECONDS))
        yield
        if sweep_task is not None:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
        services.shutdown()
        logger.info("✅ Application shutting down.")

    # =========================================
    #  ✅ FastAPI App
    # =========================================
    app = FastAPI(lifespan=lifespan, title="TeamMove Billing Backend")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.FRONTEND_URL, "http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.error("❌ %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # =========================================
    # 📦 Routers
    # =========================================
    app.include_router(organization_router)
    app.include_router(billing_router)
    app.include_router(billing_router, prefix="/api/v1")

    # =========================================
    # 🩺 Health Check
    # =========================================
    @app.get("/health")
    def health_check():
        return {"status": "ok", "message": "Backend is running"}

    @app.get("/")
    def read_root():
        return {"message": "Welcome to TeamMove Billing Backend!"}

    return app


app = create_app()
