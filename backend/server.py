from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, cron, billing, admin_billing
from services.plan_catalog import PlanNotFoundError
from services.usage_ledger import QuotaExceededError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import job runners from shared module (used by scheduler and cron routes)
from job_runner import run_grace_period_sweep, run_pending_downgrades


def _scheduler_enabled() -> bool:
    if os.environ.get("PYTEST_RUNNING"):
        return False
    return os.environ.get("BILLING_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")


def _build_scheduler() -> AsyncIOScheduler:
    """Scheduler with a MongoDB job store so jobs survive restarts."""
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'workspace_billing')
    try:
        from pymongo import MongoClient
        jobstores = {
            'default': MongoDBJobStore(
                database=db_name,
                collection='scheduled_jobs',
                client=MongoClient(mongo_url)
            )
        }
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}
    return AsyncIOScheduler(jobstores=jobstores)


scheduler = None


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    # Startup
    logger.info("Starting Workspace Billing API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Stripe checkout will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not os.environ.get("MERCADOPAGO_ACCESS_TOKEN"):
        logger.error("MERCADOPAGO_ACCESS_TOKEN is not set. MercadoPago checkout will fail.")

    if _scheduler_enabled():
        scheduler = _build_scheduler()

        # Downgrade workspaces whose grace period ended, every hour on the hour
        scheduler.add_job(
            run_grace_period_sweep,
            CronTrigger(minute=0),
            id="grace_period_sweep",
            name="Grace Period Expiry Sweep",
            replace_existing=True
        )

        # Apply due scheduled downgrades every 30 minutes
        scheduler.add_job(
            run_pending_downgrades,
            CronTrigger(minute="*/30"),
            id="pending_downgrades",
            name="Scheduled Downgrade Applier",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")
    else:
        logger.info("Background job scheduler disabled")

    yield

    # Shutdown
    logger.info("Shutting down Workspace Billing API")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Workspace Billing API",
    description="Plans, quotas and subscription lifecycle for workspaces",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)  # Provider webhooks (Stripe, MercadoPago)
app.include_router(cron.router)  # Externally triggered jobs
app.include_router(billing.router)
app.include_router(admin_billing.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Workspace Billing",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Quota gate: a uniform body callers can match on "code"
@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    logger.info(f"Lead quota reached for workspace {exc.workspace_id} ({exc.used}/{exc.limit})")
    return JSONResponse(status_code=403, content=exc.to_dict())


@app.exception_handler(PlanNotFoundError)
async def plan_not_found_handler(request: Request, exc: PlanNotFoundError):
    return JSONResponse(status_code=404, content={"detail": f"Plan not found: {exc.plan_key}"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(errors), "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
