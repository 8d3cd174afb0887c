import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import setup_exception_handlers
from .middleware import SecurityHeadersMiddleware
from .rate_limiter import RateLimitHeadersMiddleware
from .routers import (
    admin_auth,
    admin_catalog,
    admin_registration,
    admin_stats,
    admin_users,
    cart,
    orders,
    products,
    subscriber_auth,
    subscribers,
)
from .seed import seed_initial_data

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

settings = get_settings()
app = FastAPI(title="Bigg Buzz Storefront API")
logger = logging.getLogger(__name__)

app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

for module in (
    subscriber_auth,
    products,
    cart,
    orders,
    subscribers,
    admin_auth,
    admin_users,
    admin_catalog,
    admin_stats,
    admin_registration,
):
    app.include_router(module.router)


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        await seed_initial_data(session)
    logger.info(f"Bigg Buzz API started ({settings.environment})")


@app.get("/health")
async def health():
    return {"ok": True}
