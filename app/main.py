from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.routers import (
    subscription_router, thumbnail_usage_router,
    user_plan_router, admin_subscription_router,
)
from app.core.config import get_settings
from app.core.database import init_db
from app.core.errors import BillingError, billing_error_handler
from app.core.limiter import limiter

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Plans, subscriptions and thumbnail credits.",
    version="1.0.0",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# Rate limiting: @limiter.limit() decorators on each endpoint, no middleware.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(BillingError, billing_error_handler)

# CORS configuration
origins = settings.CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscription_router)
app.include_router(thumbnail_usage_router)
app.include_router(user_plan_router)
app.include_router(admin_subscription_router)


@app.get("/")
@limiter.limit("5/minute")
def read_root(request: Request):
    return {"message": f"{settings.APP_NAME} is running."}


@app.get("/health")
def health():
    return {"status": "ok"}
