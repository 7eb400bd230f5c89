import asyncio
import logging
import re
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from marketsync.config import settings
from marketsync.routers import cron, integrations, webhooks
from marketsync.utils.logger import logger


app = FastAPI(title="Marketsync API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(integrations.router)
app.include_router(webhooks.router)
app.include_router(cron.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Marketsync API starting up...")

    from marketsync.models_sqlalchemy import Base, engine
    from marketsync.models_sqlalchemy import models, sync_workers  # noqa: F401  (register tables)

    database_url = settings.DATABASE_URL
    masked_url = re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", database_url)
    logger.info(f"📊 Database URL: {masked_url}")

    Base.metadata.create_all(bind=engine)
    logger.info("✅ Tables ensured")

    if database_url.startswith("sqlite"):
        # SQLite has no SKIP LOCKED; run the workers separately against Postgres.
        logger.info("⏭️  Skipping background workers in SQLite dev mode")
        return

    from marketsync.workers import run_cron_sweep_loop, run_job_worker_loop

    asyncio.create_task(run_job_worker_loop())
    logger.info("✅ Job worker loop started (concurrency=%s)", settings.WORKER_CONCURRENCY)

    asyncio.create_task(run_cron_sweep_loop())
    logger.info("✅ Cron sweep loop started (runs every %s seconds)", settings.CRON_SWEEP_INTERVAL_SECONDS)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    from fastapi import HTTPException, status
    from sqlalchemy.exc import SQLAlchemyError

    from marketsync.models_sqlalchemy import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except SQLAlchemyError as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )


@app.get("/")
async def root():
    return {
        "message": "Marketsync API",
        "version": "1.0.0",
        "docs": "/docs",
    }
