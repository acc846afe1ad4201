"""
Entitlements backend - subscription and trial reconciliation API
Stripe is the billing gateway; the database holds the persisted entitlement state.
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from routers.billing_router import billing_router
from routers.subscription_router import subscription_router
from routers.users_router import users_router
from utils.rate_limit import RateLimiterMiddleware, connect_redis
from database import init_db
from config.settings import settings

# ============================================================================
# LOGGING
# ============================================================================

# Write all events to ./logs/app.log and stderr
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

from backend.utils.responses import error_response, entitlement_error_response
from services.errors import EntitlementError

WEBHOOK_PATH = "/api/billing/webhook"

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Entitlements API")


def _is_render_env() -> bool:
    """Check if running in Render.com environment"""
    return bool(settings.render or settings.render_external_url or settings.render_service_name)


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception on {request.url.path}: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "data": {}, "error": "internal_error", "message": "Internal Server Error"}
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        # HSTS only where HTTPS is guaranteed
        if _is_render_env():
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(
    RateLimiterMiddleware,
    requests_per_minute=settings.rate_limit_per_minute,
    exempt_paths=(WEBHOOK_PATH,),
    redis_client=connect_redis(settings.redis_url),
)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url] if settings.frontend_url else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc}")
    return entitlement_error_response(exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response("http_error", status=exc.status_code, message=str(exc.detail))

# ============================================================================
# STARTUP
# ============================================================================

@app.on_event("startup")
async def check_env_keys_on_startup():
    """Warn about missing Stripe configuration (non-fatal)"""
    key_checks = {
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "STRIPE_PRICE_PRO_MONTHLY": settings.stripe_price_pro_monthly,
        "STRIPE_PRICE_PRO_YEARLY": settings.stripe_price_pro_yearly,
    }
    missing = [env_key for env_key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All billing environment variables are set")


@app.on_event("startup")
async def initialize_database():
    """Create all tables."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


@app.get("/api/health")
async def health():
    return {"ok": True, "status": "healthy"}

# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)
app.include_router(subscription_router)
app.include_router(users_router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
