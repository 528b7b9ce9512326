from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import time
import uuid
from contextlib import asynccontextmanager

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from safety_gateway.routers import moderation, history, storage
from safety_gateway.core.logger import logger
from safety_gateway.core.exceptions import ContentSafetyGatewayException, status_code_for
from safety_gateway.core.config import settings
from safety_gateway.db.init_db import init_db
from safety_gateway.db.session import get_db
from safety_gateway.models.moderation_request import ModerationRequest

VERSION = "1.0.0"

# Application lifespan management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management for startup and shutdown events."""
    logger.info("Starting Content Safety Gateway", extra={"version": VERSION})

    try:
        init_db()
        logger.info("Database tables verified/created successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}", exc_info=True)

    yield

    logger.info("Shutting down Content Safety Gateway")

app = FastAPI(
    title=settings.app_name,
    description="""
    Screens user-submitted text and images with Azure AI Content Safety,
    keeps an audit trail of every request and enforces a daily quota per user.

    ## Authentication

    Every moderation and history call needs a personal API token:
    `Authorization: Bearer <token>`

    ## Limits

    * A daily request quota per user; failed analyses still count
    * **30 requests per minute** per client IP
    """,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trace ID middleware
@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    """Tag each HTTP call with a trace ID for log correlation."""
    trace_id = str(uuid.uuid4())
    request.state.trace_id = trace_id

    logger.info(
        "Request started",
        extra={
            "trace_id": trace_id,
            "method": request.method,
            "url": str(request.url.path),
            "client_ip": request.client.host if request.client else "unknown"
        }
    )

    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    response.headers["X-Trace-ID"] = trace_id
    response.headers["X-Process-Time"] = str(process_time)

    logger.info(
        "Request completed",
        extra={
            "trace_id": trace_id,
            "status_code": response.status_code,
            "process_time": process_time
        }
    )

    return response

# Global exception handler
@app.exception_handler(ContentSafetyGatewayException)
async def gateway_exception_handler(request: Request, exc: ContentSafetyGatewayException):
    """Render gateway exceptions as structured JSON."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"Request rejected: {exc.message}",
        extra={
            "trace_id": getattr(request.state, "trace_id", "unknown"),
            "error_code": exc.error_code,
            "details": exc.details
        }
    )

    return JSONResponse(
        status_code=status_code,
        content=exc.to_payload(),
        headers=exc.headers
    )

# Include routers
app.include_router(moderation.router)
app.include_router(history.router)
app.include_router(storage.router)

# Health check endpoint
@app.get("/health", tags=["monitoring"])
def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Health status and basic system information
    """
    try:
        db.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": VERSION,
            "services": {
                "database": "healthy",
                "api": "healthy"
            }
        }
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "timestamp": time.time(),
                "error": str(e)
            }
        )

# Metrics endpoint
@app.get("/metrics", tags=["monitoring"])
def get_metrics(db: Session = Depends(get_db)):
    """
    Basic ledger metrics.

    Returns:
        Request totals broken down by status and content type
    """
    total_requests = db.query(func.count(ModerationRequest.id)).scalar()

    status_stats = db.query(
        ModerationRequest.status,
        func.count(ModerationRequest.id)
    ).group_by(ModerationRequest.status).all()

    content_type_stats = db.query(
        ModerationRequest.content_type,
        func.count(ModerationRequest.id)
    ).group_by(ModerationRequest.content_type).all()

    status_breakdown = {status.value: count for status, count in status_stats}
    successful = status_breakdown.get("success", 0)

    return {
        "timestamp": time.time(),
        "total_requests": total_requests,
        "status_breakdown": status_breakdown,
        "content_type_breakdown": {ct.value: count for ct, count in content_type_stats},
        "success_rate": successful / total_requests if total_requests else 0,
    }

# Root endpoint
@app.get("/", tags=["general"])
async def root():
    """
    Root endpoint with API information.

    Returns:
        Basic API information and links
    """
    return {
        "message": settings.app_name,
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
        "endpoints": {
            "text_moderation": "/text",
            "image_moderation": "/image",
            "history": "/requests",
            "usage": "/usage"
        }
    }
