import logging
import os

import redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from core.config import settings
from core.db import Base, engine
from core.celery import celery_app
from core.ratelimit import RateLimiter
from services.errors import PaymentError
from services.notifications import NotificationDispatcher
from routes.mpesa import router as mpesa_router
from routes.paystack import router as paystack_router
from routes.payments import router as payments_router
from routes.admin_payments import router as admin_payments_router

load_dotenv()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
from fastapi.openapi.utils import get_openapi

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    # Receipts and admin review need a token; provider callbacks never do
    for path, operations in openapi_schema.get("paths", {}).items():
        if path.startswith("/admin") or path.endswith("/receipt"):
            for operation in operations.values():
                operation["security"] = [{"BearerAuth": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

# Ensure tables exist (for dev/test; in prod use Alembic)
Base.metadata.create_all(bind=engine)

# Shared per process; tests swap these for in-memory doubles
app.state.rate_limiter = RateLimiter(redis.from_url(settings.REDIS_URL))
app.state.dispatcher = NotificationDispatcher()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error("Payment request failed: %s", exc.detail, extra={"path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(mpesa_router)
app.include_router(paystack_router)
app.include_router(payments_router)
app.include_router(admin_payments_router)

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


@app.get("/celery-health")
async def celery_health_check():
    """Check Celery worker status"""
    try:
        inspect = celery_app.control.inspect()
        stats = inspect.stats()
        if stats:
            return {"status": "healthy", "workers": len(stats)}
        else:
            return {"status": "no_workers", "message": "No Celery workers running"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
